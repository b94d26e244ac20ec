"""
HTTP application: service wiring, routers and the serverless entry point.
"""
