import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(project_root))

from crawler.db import create_db_and_tables  # noqa: E402

if __name__ == "__main__":
    print("Creating crawler tables...")
    create_db_and_tables()
    print("Tables created successfully!")
