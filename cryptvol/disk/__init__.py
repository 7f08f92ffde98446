from .service import Service  # noqa: F401
