from __future__ import annotations

import os
import re
from typing import Optional

from .constants import DEFAULT_PHOTO_EXT, PHOTO_DIR

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")
_EXT_RE = re.compile(r"^\.[A-Za-z0-9]{1,8}$")


def norm_entry_name(p: str) -> str:
    """Normalize container entry names to a canonical forward-slash form.

    Rules:
    - Convert backslashes to slashes
    - Strip leading/trailing slashes
    - Remove empty and '.' segments
    - Reject '..' segments and empty names
    """
    p = p.replace("\\", "/").strip("/")
    parts = [q for q in p.split("/") if q not in ("", ".")]
    for q in parts:
        if q == "..":
            raise ValueError("Entry name may not contain '..'")
    if not parts:
        raise ValueError("Entry name is empty")
    return "/".join(parts)


def photo_extension(filename: Optional[str]) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    return ext if _EXT_RE.match(ext) else DEFAULT_PHOTO_EXT


def safe_stem(photo_id: str) -> str:
    stem = _UNSAFE_CHARS.sub("_", photo_id).strip(".")
    return stem or "photo"


def photo_entry_name(photo_id: str, filename: Optional[str]) -> str:
    """Entry name for a photo: ``photos/<photo id><ext>``."""
    return norm_entry_name(f"{PHOTO_DIR}/{safe_stem(photo_id)}{photo_extension(filename)}")


def is_photo_entry(name: str) -> bool:
    return name.startswith(PHOTO_DIR + "/") and len(name) > len(PHOTO_DIR) + 1


def photo_id_from_entry(name: str) -> str:
    """Recover the photo id encoded in a photo entry name."""
    base = name[len(PHOTO_DIR) + 1 :] if is_photo_entry(name) else name
    return os.path.splitext(base)[0]
