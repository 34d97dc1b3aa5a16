"""
Request-scoped context (see `request_context`) and the HTTP glue that establishes it
(see `middleware`). Kept import-free so the logging setup can depend on it.
"""
