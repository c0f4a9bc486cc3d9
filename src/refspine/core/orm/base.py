"""Declarative base for refspine tables.

``type_annotation_map`` lets Mapped columns use plain Python types:

* ``str``   → ``Text``
* ``int``   → ``Integer``
* ``datetime.datetime`` → ``DateTime``
* ``dict``  → ``JSON``    (stored as TEXT in SQLite, native JSON elsewhere)
* ``list``  → ``JSON``
"""

from __future__ import annotations

import datetime

from sqlalchemy import JSON, DateTime, Integer, Text
from sqlalchemy.orm import DeclarativeBase


class RefSpineBase(DeclarativeBase):
    """Shared declarative base for every refspine table."""

    type_annotation_map = {
        str: Text,
        int: Integer,
        datetime.datetime: DateTime,
        dict: JSON,
        list: JSON,
    }
