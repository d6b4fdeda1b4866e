"""Format and lint relaychat with ruff."""

import subprocess
import sys
from pathlib import Path


def _targets() -> list[str]:
    tests = sorted(str(p) for p in Path(".").glob("test_*.py"))
    return ["relaychat/", "scripts/", "conftest.py", *tests]


def main():
    """Run ruff format, whitespace fixes, then the configured lint rules."""
    targets = _targets()
    commands = [
        ["ruff", "format", *targets],
        ["ruff", "check", "--preview", "--fix", "--select", "W291,W293,E3", *targets],
        ["ruff", "check", "--fix", *targets],
    ]
    try:
        for command in commands:
            subprocess.run(["uv", "run", *command], check=True)
    except subprocess.CalledProcessError:
        sys.exit(1)


if __name__ == "__main__":
    main()
