import sys

from balance_log.cli import main

sys.exit(main())
