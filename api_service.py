#!/usr/bin/env python3
"""
Shim module delegating to alertsync.api_service.
Allows `python api_service.py` from the repository root.
"""

from alertsync.api_service import main  # type: ignore


if __name__ == '__main__':
    main()
