"""
Client-side sync core: local store, change tracking, encryption and the
per-profile reconciler that talks to the sync server.
"""
