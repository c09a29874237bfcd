# =============================================================================
# mailsync Entry Point for `python -m mailsync`
# =============================================================================
# Equivalent to running the 'mailsync' command after installation.
# =============================================================================

import sys

from mailsync.app import main

if __name__ == "__main__":
    sys.exit(main())
