import sys

from reactree.cli import main

sys.exit(main())
