#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json

import requests


def main() -> None:
    parser = argparse.ArgumentParser(description="Reload the order set of a running API and print its stats")
    parser.add_argument("--base-url", default="http://localhost:8000")
    args = parser.parse_args()

    sync = requests.post(f"{args.base_url}/orders/sync", timeout=300)
    sync.raise_for_status()
    stats = requests.get(f"{args.base_url}/orders/stats", timeout=30)
    stats.raise_for_status()
    print(json.dumps({"sync": sync.json()["sync"], **stats.json()}, indent=2, ensure_ascii=False))


if __name__ == "__main__":
    main()
