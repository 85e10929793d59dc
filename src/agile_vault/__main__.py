import sys

from .agent_daemon import main

sys.exit(main())
