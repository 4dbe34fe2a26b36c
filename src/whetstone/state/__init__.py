"""
Session persistence: schema, advisory lock and store.
"""
