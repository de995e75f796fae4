"""Exception types raised by the ACL core."""


class AclError(Exception):
    """Base exception for ACL operations."""

    def __init__(self, message: str = "ACL operation failed"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(AclError):
    """Raised when a role, group, account or entity id does not resolve."""
    pass


class InvalidParameterError(AclError):
    """Raised for duplicate names, unsupported entity types or malformed id lists."""
    pass


class PermissionDeniedError(AclError):
    """Raised when the caller may not act on the target role, group, account or entity."""
    pass
