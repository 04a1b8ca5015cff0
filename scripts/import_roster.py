"""CLI script to import a CSV roster of students or teachers into the DB.
Usage: python scripts/import_roster.py ROSTER.csv [--role TEACHER] [--dry-run]
"""
import sys
import argparse
import pathlib
# Ensure the repository root is on sys.path so package imports work when running this script directly
ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))
from academic_tracker.container import build_container
from academic_tracker.models import UserRole


def main(path: pathlib.Path, role: UserRole, dry_run: bool = False) -> int:
    """Import `path` as pre-registered accounts for `role`.

    Results are printed to stdout; the exit code is 1 when any row failed.
    """
    if not path.exists():
        print(f'Roster file not found at {path}')
        return 2
    container = build_container()
    result = container.roster_import_service.import_csv(path.read_bytes(), role, dry_run=dry_run)
    prefix = '[dry run] ' if dry_run else ''
    print(f"{prefix}created {result['created']}, skipped {result['skipped']}, errors {len(result['errors'])}")
    for err in result['errors']:
        print(f"  row {err['index']}: {err['error']}")
    return 1 if result['errors'] else 0


if __name__ == '__main__':
    parser = argparse.ArgumentParser()
    parser.add_argument('roster', type=pathlib.Path, help='CSV file exported from the registrar')
    parser.add_argument('--role', choices=[UserRole.STUDENT.value, UserRole.TEACHER.value],
                        default=UserRole.STUDENT.value)
    parser.add_argument('--dry-run', action='store_true', help='Validate without writing')
    args = parser.parse_args()
    sys.exit(main(args.roster, UserRole(args.role), dry_run=args.dry_run))
