"""peercall is a signaling relay and call state machine for peer calls."""
from __future__ import annotations

import importlib.metadata as importlib_metadata

__version__ = importlib_metadata.version('peercall')
