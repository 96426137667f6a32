#!/usr/bin/env python3
"""Import workout plans from a TSV file into the Workout Tracker API.

One exercise per row; columns plan_name, base_template_name and
exercise_name are required, sort_order, target_sets, target_reps,
target_weight and notes are optional. Runs as a dry run unless --commit
is given. Existing plans are rejected unless --replace is given.

Usage: python3 import_plans.py <tsv_file> <api_url> [--replace] [--commit]
"""
import sys

import requests

USAGE = "Usage: python3 import_plans.py <tsv_file> <api_url> [--replace] [--commit]"


def _print_errors(response):
    try:
        detail = response.json().get("detail")
    except ValueError:
        detail = response.text
    if isinstance(detail, dict):
        print(f"{detail.get('message', 'Import failed')}:")
        for err in detail.get("errors", []):
            print(f"  - {err}")
    else:
        print(f"Import failed ({response.status_code}): {detail}")


def import_plans(tsv_file, api_url, replace=False, commit=False):
    if not api_url.startswith('http'):
        api_url = f'https://{api_url}'
    api_url = api_url.rstrip('/')

    print(f"Reading TSV: {tsv_file}")
    print(f"Target API: {api_url}")

    try:
        health = requests.get(f"{api_url}/api/health", timeout=10)
        health.raise_for_status()
        print(f"API is healthy ({health.json().get('db_type', '?')})\n")
    except Exception as e:
        print(f"Cannot connect: {e}")
        return 1

    with open(tsv_file, 'r', encoding='utf-8') as f:
        tsv = f.read()

    payload = {
        'tsv': tsv,
        'dry_run': not commit,
        'mode': 'replace' if replace else 'create',
    }
    try:
        response = requests.post(f"{api_url}/api/import/plans", json=payload, timeout=60)
    except requests.RequestException as e:
        print(f"Request failed: {e}")
        return 1
    if response.status_code != 200:
        _print_errors(response)
        return 1

    result = response.json()
    print(f"{'='*60}")
    print(f"{'DRY RUN, nothing written' if result['dry_run'] else 'Committed'} (mode={result['mode']})")
    print(f"Rows: {result['rows']}")
    for plan in result['plans']:
        plan_id = plan['plan_id'] if plan['plan_id'] is not None else '-'
        print(f"  {plan['action']:<8} {plan['name']} <- {plan['base_template']} "
              f"({plan['exercises']} exercises, id {plan_id})")
    if result['new_exercises']:
        print(f"New exercises: {', '.join(result['new_exercises'])}")
    print(f"{'='*60}\n")
    if result['dry_run']:
        print("Re-run with --commit to write these plans.")
    return 0


def main(argv):
    flags = {a for a in argv if a.startswith('--')}
    args = [a for a in argv if not a.startswith('--')]
    unknown = flags - {'--replace', '--commit'}
    if len(args) != 2 or unknown:
        print(USAGE)
        return 1
    return import_plans(args[0], args[1], replace='--replace' in flags, commit='--commit' in flags)


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
