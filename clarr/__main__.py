import sys

from .webapp.main import main

sys.exit(main())
