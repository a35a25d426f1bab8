"""Utility helpers for threadline."""

from threadline.utils.helpers import ensure_dir, get_data_path

__all__ = ["ensure_dir", "get_data_path"]
