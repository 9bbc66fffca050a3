"""
Clients for the services the import pipeline talks to.
"""
