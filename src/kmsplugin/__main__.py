import sys

from kmsplugin.cli.main import main

if __name__ == "__main__":
    sys.exit(main())
