import sys

from dockhand.main import main

sys.exit(main())
