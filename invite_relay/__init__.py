"""invite_relay package.

Keep top-level import lightweight: the HTTP app, the worker process and the
CLI each import what they need from the submodules.
"""

__version__ = "0.3.0"

__all__ = ["__version__"]
