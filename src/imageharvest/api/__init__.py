"""Image Harvest FastAPI REST API layer.

Modules
-------
main
    Application factory, route handlers, and the ``main()`` CLI entry point.
models
    Pydantic models for API request validation.
"""
