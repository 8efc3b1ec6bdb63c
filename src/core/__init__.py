"""Core domain package for chatstore.

Core contains the document store, index catalog, aggregation engine and chat
analytics without any persistence-engine specifics, keeping the logic portable.
"""
