import sys

from bibstash.cli import main

sys.exit(main())
