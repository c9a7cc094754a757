import sys

from src.analyzer.cli import main

sys.exit(main())
