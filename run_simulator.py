#!/usr/bin/env python3
"""Runner script to start the simulator."""
import os
import sys

from dashuav.simulator import main

os.environ.setdefault("BACKEND_URL", "http://localhost:8080")

if __name__ == "__main__":
    main(["--speed", "5", "--minutes", "3"] + sys.argv[1:])
