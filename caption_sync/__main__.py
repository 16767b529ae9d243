"""Package entry point for ``python -m caption_sync``.

WHY: Users run the replay tool as ``python -m caption_sync replay FILE``.
Python's ``-m`` flag looks for ``__main__.py`` inside the package and
executes it.

HOW: Delegates to the CLI's main() and exits with its return code.
"""

import sys

from caption_sync.cli import main

if __name__ == "__main__":
    sys.exit(main())
