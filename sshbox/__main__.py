import sys

from sshbox.cli import main

sys.exit(main())
