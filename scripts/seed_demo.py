#!/usr/bin/env python3
"""
Demo data seeder for TutorSync

Creates a teacher, three students, a course with its books and a class in
the configured document store, then prints bearer tokens for each user so
the API can be exercised locally.

Usage:
    STORE_BACKEND=redis python scripts/seed_demo.py

With STORE_BACKEND=memory the data only lives for the duration of this
script, which is useful to check the seed itself and nothing else.
"""

import sys
from pathlib import Path

# Add parent directory to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from tutorsync.core.auth import create_access_token
from tutorsync.core.config import settings
from tutorsync.domain.classroom import ClassRoom, Course
from tutorsync.domain.user import Role, TokenResponse, User
from tutorsync.infrastructure.store import DocumentStore, doc_key, get_document_store, utcnow_iso


# Configuration
COURSE_ID = "iqra-course"
CLASS_ID = "test-class-1"
BOOKS = ["iqra-1", "iqra-2", "iqra-3", "iqra-4", "iqra-5", "iqra-6"]

USERS = [
    User(id="teacher-1", email="teacher@tutorsync.dev", name="Demo Teacher", role=Role.TEACHER),
    User(id="admin-1", email="admin@tutorsync.dev", name="Demo Admin", role=Role.ADMIN),
    *[
        User(id=f"student-{i}", email=f"student{i}@tutorsync.dev", name=f"Test Student {i}")
        for i in range(1, 4)
    ],
]


def seed_users(store: DocumentStore) -> None:
    """Create or overwrite the demo users."""
    for user in USERS:
        record = user.model_dump(by_alias=True, exclude={"user_id"})
        record["createdAt"] = utcnow_iso()
        store.set(doc_key("users", user.user_id), record)
        print(f"[OK] User {user.user_id} ({user.role})")


def seed_class(store: DocumentStore) -> None:
    """Create the demo course and class unless the class already exists."""
    course = Course(id=COURSE_ID, name="Iqra Reading", books=BOOKS)
    store.set(doc_key("courses", COURSE_ID), course.to_document())
    print(f"[OK] Course '{COURSE_ID}' with {len(BOOKS)} books")

    if store.get(doc_key("classes", CLASS_ID)) is not None:
        print(f"[OK] Class '{CLASS_ID}' already exists, keeping its history")
        return

    classroom = ClassRoom(
        id=CLASS_ID,
        name="Test Iqra Class",
        teacher_id="teacher-1",
        student_ids=[u.user_id for u in USERS if u.role == Role.STUDENT.value],
        course_id=COURSE_ID,
        schedule={"day": "Monday", "time": "14:00"},
    )
    store.set(doc_key("classes", CLASS_ID), classroom.to_document())
    print(f"[OK] Class '{CLASS_ID}' created")


def main():
    """Main entry point."""
    print("=" * 60)
    print("TutorSync - Demo Data Seeder")
    print("=" * 60)
    print(f"\nStore backend: {settings.store_backend}")
    if settings.store_backend == "memory":
        print("[WARN] In-memory store: seeded data is discarded when this script exits")
    print()

    store = get_document_store()
    seed_users(store)
    seed_class(store)

    print("\nBearer tokens:")
    for user in USERS:
        issued = TokenResponse(
            access_token=create_access_token(user),
            expires_in=settings.access_token_expire_minutes * 60,
            user=user,
        )
        print(f"   {user.user_id}: {issued.access_token}")

    print("\n" + "=" * 60)
    print("[SUCCESS] Seeding complete!")
    print("=" * 60)
    print(f"\nStart a session with: POST /sessions {{\"classId\": \"{CLASS_ID}\"}}")

    return 0


if __name__ == "__main__":
    sys.exit(main())
