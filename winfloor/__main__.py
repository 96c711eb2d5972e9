"""
Winfloor Module Entry Point
============================

Allows running the winfloor CLI via: python -m winfloor
"""

from winfloor.cli import main

if __name__ == "__main__":
    main()
