"""python -m apn_sender"""

import sys

from apn_sender.cli import main

sys.exit(main())
