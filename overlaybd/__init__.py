"""Layered LSMT block files, segment indexes and tar-wrapped blob files."""

__version__ = "0.1.0"
__all__ = ["segment", "index", "header", "lsmt_file", "layers", "tar_file"]