"""HTTP smoke test against a running backend.

    python smoke_check.py --url http://localhost:5000 --branch CAS
"""
import sys
import argparse
import requests


def run_checks(base_url, branch, username, password, printer_url=None):
    api = f"{base_url.rstrip('/')}/api"
    http = requests.Session()

    def health():
        return http.get(f"{api}/health", timeout=5).json().get('status') == 'OK'

    def public_menu():
        response = http.get(f"{api}/public/branches/{branch}/menu", timeout=5)
        return response.status_code == 200 and len(response.json()['categories']) > 0

    def public_table():
        response = http.get(f"{api}/public/branches/{branch}/tables/T1", timeout=5)
        return response.status_code == 200

    def login():
        response = http.post(f"{api}/login", json={'username': username, 'password': password}, timeout=5)
        return response.status_code == 200

    def tables():
        response = http.get(f"{api}/tables", timeout=5)
        return response.status_code == 200 and len(response.json()) > 0

    def kitchen_queue():
        return http.get(f"{api}/kitchen/orders", timeout=5).status_code == 200

    checks = [
        ('Health Check', health),
        ('Customer Menu', public_menu),
        ('Table Lookup', public_table),
        ('Authentication', login),
        ('Tables API', tables),
        ('Kitchen Queue', kitchen_queue),
    ]
    if printer_url:
        checks.append(('Printer Service',
                       lambda: requests.get(f"{printer_url.rstrip('/')}/health", timeout=5).ok))

    passed = 0
    failed = 0
    for name, check in checks:
        try:
            ok = check()
            error = None
        except (requests.RequestException, ValueError, KeyError) as e:
            ok = False
            error = e
        if ok:
            print(f"✓ {name}: PASSED")
            passed += 1
        else:
            print(f"✗ {name}: FAILED" + (f" ({error})" if error else ''))
            failed += 1
    print(f"\nResults: {passed} passed, {failed} failed")
    return failed


def main(argv=None):
    parser = argparse.ArgumentParser(description='Smoke test a running POSQ backend')
    parser.add_argument('--url', default='http://localhost:5000')
    parser.add_argument('--branch', default='CAS')
    parser.add_argument('--username', default='admin')
    parser.add_argument('--password', default='admin123')
    parser.add_argument('--printer-url', help='also check the printer service')
    args = parser.parse_args(argv)

    print(f"Testing POSQ backend at {args.url}...\n")
    failed = run_checks(args.url, args.branch, args.username, args.password, args.printer_url)
    if failed == 0:
        print("All checks passed!")
        print(f"Customer menu: /menu?table=T1&branch={args.branch}")
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
