"""
Entry point for `python -m pairterm`.
"""

from .cli import main

if __name__ == "__main__":
    main()
