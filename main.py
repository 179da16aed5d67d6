"""Convenience entry point to run the KMS plugin.

Allows starting the plugin with `python main.py --key-uri ...` from the project root.
"""

from __future__ import annotations

import sys
from pathlib import Path

# Ensure the src/ directory is on sys.path so `import kmsplugin` works
ROOT = Path(__file__).resolve().parent
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from kmsplugin.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
