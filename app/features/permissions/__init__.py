"""
Permission management feature module.

Role-based access control: permissions, roles, role groups, full-replace
assignment reconciliation and effective permission resolution.
"""
