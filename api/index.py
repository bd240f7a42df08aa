import sys
import os

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from credit_ledger.api import app, handler  # noqa: E402

__all__ = ["app", "handler"]
