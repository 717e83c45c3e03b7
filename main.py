import sys
from dotenv import load_dotenv

load_dotenv(override=True)

from authsync.cli import main as cli_main

def main():
    return cli_main(sys.argv[1:])

if __name__ == "__main__":
    sys.exit(main())
