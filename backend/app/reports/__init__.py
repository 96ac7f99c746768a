"""
reports — Reports, users, comments and their stores.

Sub-modules:
    models      — Data structures shared across the system
    store       — Store interfaces + in-memory implementations
    orm         — SQLAlchemy table mappings
    sql_store   — SQL implementations of the store interfaces
    service     — Report workflows (creation notifier, status, comments, review)
"""
