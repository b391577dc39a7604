"""
Service layer: configuration models, logging setup and the provider
fallback chain that sits between request handlers and the data vendors.
"""
