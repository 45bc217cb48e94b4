"""Package metadata for labpipe."""

__app_name__ = "labpipe"
__version__ = "0.3.0"
__description__ = "Declarative stage-based pipeline runner for home-lab CI/CD workflows"
__license_type__ = "MIT"

__all__ = [
    "__app_name__",
    "__description__",
    "__license_type__",
    "__version__",
]
