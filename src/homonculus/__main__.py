"""Allow ``python -m homonculus``."""

from homonculus.cli import main

if __name__ == "__main__":
    main()
