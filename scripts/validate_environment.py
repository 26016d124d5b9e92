#!/usr/bin/env python3
"""Validate local Smart Match environment readiness."""

from __future__ import annotations

import importlib
import shutil
import sys
import tempfile
from dataclasses import replace
from datetime import timedelta
from pathlib import Path

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from smartmatch.repository.data_repository import DataRepository
from smartmatch.services.matching_service import SmartMatchService
from smartmatch.utils.config import get_settings
from smartmatch.utils.timeutils import utc_now

SEPARATOR_LINE = "=" * 44


def _print_result(name: str, success: bool, detail: str = "") -> tuple[bool, str]:
    if success:
        return True, f"[PASS] {name}{detail}"
    return False, f"[FAIL] {name}: {detail}"


def main() -> int:
    results: list[str] = []
    all_passed = True
    temp_dir = tempfile.mkdtemp(prefix="smartmatch-env-")

    # CHECK 1 - Python version >= 3.10
    if sys.version_info >= (3, 10):
        ok, line = _print_result("Python " + sys.version.split()[0], True)
    else:
        ok, line = _print_result(
            "Python version >= 3.10",
            False,
            f"found {sys.version.split()[0]}",
        )
    results.append(line)
    all_passed = all_passed and ok

    # CHECK 2 - Required packages importable
    package_specs = [
        "fastapi",
        "uvicorn",
        "pydantic",
        "numpy",
        "pandas",
        "ortools",
        "requests",
        "httpx",
        "pytest",
    ]
    import_errors: list[str] = []
    for module_name in package_specs:
        try:
            importlib.import_module(module_name)
        except ImportError as exc:
            import_errors.append(f"{module_name} ({exc})")
    if import_errors:
        ok, line = _print_result(
            "Required packages",
            False,
            "missing/unimportable -> " + "; ".join(import_errors),
        )
    else:
        ok, line = _print_result("Required packages: all importable", True)
    results.append(line)
    all_passed = all_passed and ok

    try:
        validation_settings = replace(
            get_settings(),
            database_path=Path(temp_dir) / "smartmatch_validation.db",
        )
        repository = DataRepository(validation_settings)

        # CHECK 3 - Database initialization
        try:
            repository.initialize_database()
            ok, line = _print_result("Database initialization", True)
        except Exception as exc:
            ok, line = _print_result("Database initialization", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 4 - Demo directory seeding
        try:
            repository.seed_demo_directory()
            providers = repository.list_provider_candidates()
            teams = repository.list_active_teams()
            if not providers or not teams:
                raise RuntimeError(f"expected providers and teams, got {len(providers)}/{len(teams)}")
            ok, line = _print_result(
                "Demo directory",
                True,
                f": {len(providers)} providers, {len(teams)} teams",
            )
        except Exception as exc:
            ok, line = _print_result("Demo directory", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 5 - One matching round end to end
        try:
            service = SmartMatchService(repository=repository, settings=validation_settings)
            start_at = utc_now() + timedelta(days=5)
            booking = service.create_booking(
                service_category="standard",
                start_at=start_at,
                end_at=start_at + timedelta(hours=3),
                city="Berlin",
            )
            issued = service.start_matching(booking.booking_id)
            if not issued.invitations:
                raise RuntimeError("no invitations issued for demo booking")
            ok, line = _print_result(
                "Matching round",
                True,
                f": {len(issued.invitations)} invitations",
            )
        except Exception as exc:
            ok, line = _print_result("Matching round", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

        # CHECK 6 - Sweep pass
        try:
            report = service.run_sweeps()
            ok, line = _print_result(
                "Sweep pass",
                True,
                f": released={report.locks_released} expired={report.invitations_expired}",
            )
        except Exception as exc:
            ok, line = _print_result("Sweep pass", False, str(exc))
        results.append(line)
        all_passed = all_passed and ok

    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    print(SEPARATOR_LINE)
    print(" Smart Match Environment Validation")
    print(SEPARATOR_LINE)
    for line in results:
        print(f" {line}")
    print(SEPARATOR_LINE)
    if all_passed:
        print(" All checks passed. Environment is ready.")
        print(SEPARATOR_LINE)
        return 0
    print(" One or more checks failed.")
    print(SEPARATOR_LINE)
    return 1


if __name__ == "__main__":
    raise SystemExit(main())
