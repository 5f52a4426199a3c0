# =============================================================================
# mailmirror Entry Point for `python -m mailmirror`
# =============================================================================
# This module allows mailmirror to be run as a Python module:
#
#   python -m mailmirror sync
#
# This is equivalent to running the 'mailmirror' command after installation.
# =============================================================================

import sys

from mailmirror.cli import main

if __name__ == "__main__":
    sys.exit(main())
