import sys

from minikit.cli import main

sys.exit(main())
