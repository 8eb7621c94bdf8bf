"""
Persistence for policy rules and the tenant directory.
"""
