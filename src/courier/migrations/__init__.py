"""
Courier Migrations

SQL schema files and the async runner that applies them.
"""
