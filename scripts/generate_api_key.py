#!/usr/bin/env python3
"""
Generate API keys for the API_KEYS setting

Prints each new key and an API_KEYS line ready for a .env file.
"""
import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bulwark.app.core.security import generate_api_key, hash_api_key


def print_keys(count: int, nbytes: int):
    """Generate and print count keys"""
    keys = [generate_api_key(nbytes) for _ in range(count)]

    print("=== New API keys ===\n")
    for key in keys:
        print(f"{key}  (sha256 {hash_api_key(key)[:12]}...)")

    print("\nAdd to .env:")
    print(f"API_KEYS={','.join(keys)}")


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Generate API keys")
    parser.add_argument("-n", "--count", type=int, default=1, help="Number of keys to generate")
    parser.add_argument("--bytes", type=int, default=32, help="Random bytes per key")

    args = parser.parse_args()
    print_keys(args.count, args.bytes)
