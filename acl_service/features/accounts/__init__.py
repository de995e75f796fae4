"""
Account directory feature module.

Holds the caller identity, the access checker and the minimal domain/account/
resource tables the ACL engine resolves against.
"""
