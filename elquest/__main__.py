import sys

from elquest.cli import main

sys.exit(main())
