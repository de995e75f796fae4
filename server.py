import uvicorn  # type: ignore

from acl_service.core import config
from acl_service.utils import get_logger, setup_logging

log = get_logger(__name__)

if __name__ == "__main__":
    setup_logging()
    log.info(f"Running ACL server on {config.HOST}:{config.PORT}")
    uvicorn.run("acl_service.main:app", reload=config.RELOAD, host=config.HOST, port=config.PORT)
