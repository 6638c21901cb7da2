"""
REST endpoints served next to the GraphQL gateway.
"""
