import sys

from volumescaler.scripts.controller import main

if __name__ == '__main__':
    sys.exit(main())
