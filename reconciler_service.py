#!/usr/bin/env python3
"""
Shim module delegating to alertsync.reconciler_service.
Allows `python reconciler_service.py` from the repository root.
"""

from alertsync.reconciler_service import main  # type: ignore


if __name__ == '__main__':
    main()
