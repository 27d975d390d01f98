"""capi-image-builder package."""

__all__ = [
    "builder",
    "cli",
    "cloudinit",
    "config",
    "constants",
    "converter",
    "exceptions",
    "extractor",
    "firmware",
    "leases",
    "models",
    "pipeline",
    "remote",
    "supervisor",
    "utils",
    "validation",
]
