"""
Host process: configuration, logging, tracing and the remote space host server.
"""
