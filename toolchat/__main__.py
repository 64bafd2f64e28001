import sys

from toolchat.cli import main

sys.exit(main())
