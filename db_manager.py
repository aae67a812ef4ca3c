#!/usr/bin/env python3
"""Database management helpers for the Store Directory Flask app (MongoDB).

Usage: python db_manager.py <command>

Commands:
  init_db       - Create the indexes the app relies on (slug, text, 2dsphere)
  list_users    - List all users in the database
  create_user   - Create a new user (interactive)
  delete_user   - Delete a user by email
  list_stores   - List all stores with their author and tags
  reset_db      - Delete user-generated collections (users, stores, reviews)
"""

from __future__ import annotations

import sys
from datetime import datetime
from getpass import getpass

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import DuplicateKeyError, PyMongoError
from werkzeug.security import generate_password_hash

try:
    from app import User, ensure_indexes, mongo_db
except Exception as exc:  # pragma: no cover - CLI helper
    print(f"Unable to import Flask app context: {exc}")
    sys.exit(1)


def init_db() -> None:
    """Create indexes for stores, users and reviews."""
    try:
        ensure_indexes()
    except PyMongoError as exc:
        print(f"Error: unable to create indexes: {exc}")
        return
    print("Indexes are in place.")


def list_users() -> None:
    """List all users with their key attributes."""
    users = list(mongo_db.users.find().sort("created_at", ASCENDING))
    if not users:
        print("No users found in MongoDB.")
        return
    print(f"\n{'ID':<25} {'Email':<30} {'Name':<20} {'Hearts':<6} {'Created'}")
    print("-" * 95)
    for doc in users:
        created = doc.get("created_at")
        created_str = created.strftime("%Y-%m-%d %H:%M") if isinstance(created, datetime) else "n/a"
        print(
            f"{str(doc.get('_id')):<25} "
            f"{doc.get('email', '-'):<30} "
            f"{doc.get('name', '-'):<20} "
            f"{len(doc.get('hearts') or []):<6} "
            f"{created_str}"
        )
    print(f"\nTotal users: {len(users)}")


def create_user() -> None:
    """Create a new user interactively."""
    print("\n--- Create New User ---")
    name = input("Name: ").strip()
    email = input("Email: ").strip()
    password = getpass("Password: ").strip()

    if not name or not email or not password:
        print("Error: name, email, and password are required.")
        return
    if len(password) < 8:
        print("Error: password must be at least 8 characters long.")
        return
    if User.get_by_email(email):
        print(f"Error: user with email {email!r} already exists.")
        return

    doc = {
        "name": name,
        "email": email,
        "email_lower": User.normalize_email(email),
        "password_hash": generate_password_hash(password),
        "hearts": [],
        "created_at": datetime.utcnow(),
    }

    try:
        result = mongo_db.users.insert_one(doc)
    except DuplicateKeyError:
        print(f"Error: user with email {email!r} already exists.")
        return

    print(f"Success: created user {name!r} with id {result.inserted_id}")


def delete_user() -> None:
    """Delete a user by email, along with the stores and reviews they wrote."""
    email = input("Enter email of user to delete: ").strip()
    if not email:
        print("Email is required.")
        return
    user = User.get_by_email(email)
    if not user:
        print(f"Error: No user found with email {email!r}.")
        return
    confirm = input(f"Are you sure you want to delete {user.name} ({email})? [y/N]: ")
    if confirm.lower() != "y":
        print("Deletion cancelled.")
        return
    store_ids = [doc["_id"] for doc in mongo_db.stores.find({"author": user.mongo_id}, {"_id": 1})]
    mongo_db.users.delete_one({"_id": user.mongo_id})
    mongo_db.stores.delete_many({"author": user.mongo_id})
    mongo_db.reviews.delete_many({"$or": [{"author": user.mongo_id}, {"store": {"$in": store_ids}}]})
    if store_ids:
        mongo_db.users.update_many({}, {"$pull": {"hearts": {"$in": store_ids}}})
    print("User and related data deleted.")


def list_stores() -> None:
    """List all stores, newest first."""
    stores = list(mongo_db.stores.find().sort("created", DESCENDING))
    if not stores:
        print("No stores found in MongoDB.")
        return
    print(f"\n{'ID':<25} {'Slug':<30} {'Author':<25} {'Tags'}")
    print("-" * 95)
    for doc in stores:
        print(
            f"{str(doc.get('_id')):<25} "
            f"{doc.get('slug', '-'):<30} "
            f"{str(doc.get('author', '-')):<25} "
            f"{', '.join(doc.get('tags') or [])}"
        )
    print(f"\nTotal stores: {len(stores)}")


def reset_db() -> None:
    """Reset user-generated collections (drops users, stores, and reviews)."""
    confirm = input("This will DELETE all users, stores, and reviews. Continue? [y/N]: ")
    if confirm.lower() != "y":
        print("Reset cancelled.")
        return
    mongo_db.users.delete_many({})
    mongo_db.stores.delete_many({})
    mongo_db.reviews.delete_many({})
    init_db()
    print("Database reset.")


def show_help() -> None:
    print(__doc__)


def main() -> None:
    if len(sys.argv) < 2:
        show_help()
        return
    command = sys.argv[1].lower()
    commands = {
        "init_db": init_db,
        "list_users": list_users,
        "create_user": create_user,
        "delete_user": delete_user,
        "list_stores": list_stores,
        "reset_db": reset_db,
        "help": show_help,
    }
    handler = commands.get(command)
    if not handler:
        print(f"Unknown command: {command}")
        show_help()
        return
    handler()


if __name__ == "__main__":
    main()
