import sys

from termpilot.cli import main_entry

sys.exit(main_entry())
