from .service import Pipeline  # noqa: F401
