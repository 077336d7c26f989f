"""Public package surface for treesnap.

Exports ``main`` for programmatic CLI invocation.
Tree building lives in ``treesnap.snapshot_model`` and background delivery in
``treesnap.runtime``.
"""

from __future__ import annotations


def main(*args, **kwargs):
    """Lazily import CLI entrypoint to keep package imports lightweight."""
    from .cli import main as _main

    return _main(*args, **kwargs)

__all__ = ["main"]
