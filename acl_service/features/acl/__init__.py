"""
ACL feature module.

Domain-scoped roles and groups, API and policy permissions on roles, explicit
entity grants on groups, and the resolver computing an account's effective
permissions from them.
"""
