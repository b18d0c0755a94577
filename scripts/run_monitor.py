#!/usr/bin/env python3
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))

print(
    f"[addons-search] gateway={os.environ.get('ADDONS_SEARCH_HOST', '127.0.0.1')}:"
    f"{os.environ.get('ADDONS_SEARCH_PORT', '8766')} | "
    f"debug={os.environ.get('ADDONS_SEARCH_DEBUG', '0')}",
    file=sys.stderr,
)

from addons_search.monitor.main import main  # noqa: E402

if __name__ == "__main__":
    main()
