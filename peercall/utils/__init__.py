"""Utility modules shared by the relay and participants."""
from __future__ import annotations
