import sys

from sdsession.cli import main

sys.exit(main())
