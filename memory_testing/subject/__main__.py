import sys

from memory_testing.subject.reference import main

sys.exit(main())
