"""
surveysync setup script.
Run once after cloning: python scripts/setup.py
"""

import subprocess
import sys
from pathlib import Path

ROOT = Path(__file__).parents[1]

ENV_TEMPLATE = """\
# Remote feature service (layer 0; layers 1 and 2 are derived from it)
LAYER_URL=
# LAYER1_URL=
# LAYER2_URL=
PORTAL_URL=https://www.arcgis.com
ARCGIS_USER=
ARCGIS_PASSWORD=

FRESHNESS_MINUTES=5
JOB_RETENTION_MINUTES=1440
"""


def run(cmd: list[str], **kwargs):
    print(f"  $ {' '.join(cmd)}")
    result = subprocess.run(cmd, **kwargs)
    if result.returncode != 0:
        print(f"[ERROR] Command failed: {' '.join(cmd)}")
        sys.exit(result.returncode)


def main():
    print("=== surveysync Setup ===\n")

    # 1. Create .env
    env_path = ROOT / ".env"
    if not env_path.exists():
        env_path.write_text(ENV_TEMPLATE, encoding="utf-8")
        print("[OK] Created .env — fill in LAYER_URL and credentials\n")
    else:
        print("[--] .env already exists\n")

    # 2. Install the package
    print("[1/2] Installing surveysync...")
    run([sys.executable, "-m", "pip", "install", "-e", str(ROOT)])

    # 3. Initialize database
    print("\n[2/2] Initializing database...")
    sys.path.insert(0, str(ROOT))
    from surveysync.storage.database import init_db
    init_db()
    print("  Database initialized.")

    print("\n=== Setup complete ===")
    print("Next steps:")
    print("  1. Edit .env — set LAYER_URL to the survey FeatureServer layer 0")
    print("  2. Run: python cli.py subjects     — to list action codes")
    print("  3. Run: python cli.py sync <CODE>  — to cache your first subject")


if __name__ == "__main__":
    main()
