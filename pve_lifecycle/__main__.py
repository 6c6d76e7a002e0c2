import sys

from pve_lifecycle.cli import main

sys.exit(main())
