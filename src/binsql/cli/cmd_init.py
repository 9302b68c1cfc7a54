"""binsql init command: writes the default config file."""
from __future__ import annotations

import argparse
from pathlib import Path

from binsql.config.defaults import DEFAULT_CONFIG_YAML
from binsql.config.loader import DEFAULT_CONFIG_PATH


def cmd_init(args: argparse.Namespace) -> int:
    config_path = Path(args.config) if args.config else DEFAULT_CONFIG_PATH

    if config_path.exists() and not args.force:
        print(f"Config already exists: {config_path}")
        print("Delete it first or pass --force to regenerate.")
        return 1

    config_path.write_text(DEFAULT_CONFIG_YAML, encoding="utf-8")
    print(f"Created {config_path}")
    print("Edit it to set engine limits, listener defaults and the server token.")
    return 0
