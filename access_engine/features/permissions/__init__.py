"""
Permission catalog feature module.

Holds the permission and role definitions that role and user edges point at.
Codes are unique and never reused; retired entries are deactivated, not deleted.
"""
