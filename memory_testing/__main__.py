import sys

from memory_testing.cli import main

sys.exit(main())
