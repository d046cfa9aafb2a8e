"""
Generation billing backend.

``core`` holds settings, persistence and cross-cutting helpers, ``services`` the
catalog, ledger and job saga, and ``api`` the FastAPI routes on top of them.
"""
