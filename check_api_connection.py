"""Check API1 and API2 connectivity with the configured credentials."""

import requests

from clients import PAGE_SIZE
from utils import load_config_safe


def main():
    config = load_config_safe()
    if config is None:
        return 1

    # Test 1: First page from API1
    print("[*] Testing API1 (first page)...")
    try:
        r = requests.get(
            config["source"]["endpoint"],
            headers={"Authorization": config["source"]["api_key"]},
            params={"offset": 0},
            timeout=10,
        )
    except requests.exceptions.RequestException as e:
        print(f"    Error: {e}")
        return 1
    print(f"    Status: {r.status_code}")
    if r.ok:
        data = r.json()
        print(f"    Customers on first page: {len(data)} (page size {PAGE_SIZE})")
        for customer in data[:3]:
            print(f"      - {customer.get('name', '?')} (updatedAt: {customer.get('updatedAt', '?')})")
    else:
        print(f"    Error: {r.text[:200]}")
        return 1

    # Test 2: Name lookup on API2
    print()
    name = data[0].get("name", "") if data else ""
    print(f"[*] Testing API2 lookup (name={name!r})...")
    try:
        r = requests.get(
            config["destination"]["endpoint"],
            headers={
                "Authorization": config["destination"]["api_key"],
                "Content-Type": "application/json; charset=utf-8",
            },
            params={"name": name},
            timeout=10,
        )
    except requests.exceptions.RequestException as e:
        print(f"    Error: {e}")
        return 1
    print(f"    Status: {r.status_code}")
    if r.status_code == 429:
        print(f"    Rate limited (retry-after: {r.headers.get('retry-after', '?')})")
    elif r.ok:
        print(f"    Matches: {len(r.json())}")
    else:
        print(f"    Error: {r.text[:300]}")
        return 1

    print()
    print("[*] Both APIs reachable.")
    return 0


if __name__ == "__main__":
    exit(main())
