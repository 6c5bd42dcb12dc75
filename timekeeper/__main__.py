import sys

from timekeeper.daemon import main

sys.exit(main())
