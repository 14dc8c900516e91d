#!/usr/bin/env python
"""Create or reset the first admin profile.

Usage: python scripts/create_admin.py admin@example.com "Full Name"
The password is read from the TIMEGUARD_ADMIN_PASSWORD environment variable.
"""
from __future__ import annotations

import json
import os
import sys
from pathlib import Path

from sqlalchemy import select

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from timeguard.db import SessionLocal
from timeguard.models import Profile, ProfileRole
from timeguard.security import hash_password


def main(argv: list[str]) -> int:
    if len(argv) < 2:
        print("usage: create_admin.py EMAIL [FULL_NAME]", file=sys.stderr)
        return 2
    password = os.environ.get("TIMEGUARD_ADMIN_PASSWORD", "")
    if len(password) < 8:
        print("TIMEGUARD_ADMIN_PASSWORD must be at least 8 characters.", file=sys.stderr)
        return 2

    email = argv[1].strip().lower()
    full_name = argv[2].strip() if len(argv) > 2 else None

    with SessionLocal() as db:
        profile = db.scalar(select(Profile).where(Profile.email == email))
        created = profile is None
        if profile is None:
            profile = Profile(email=email)
            db.add(profile)
        profile.full_name = full_name or profile.full_name
        profile.role = ProfileRole.ADMIN
        profile.password_hash = hash_password(password)
        profile.is_active = True
        db.commit()
        db.refresh(profile)
        print(json.dumps({"id": profile.id, "email": profile.email, "created": created}))
    return 0


if __name__ == "__main__":
    raise SystemExit(main(sys.argv))
