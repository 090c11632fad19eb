#!/usr/bin/env python3
"""
Seed the first console admin.

Reads ADMIN_EMAIL and ADMIN_PASSWORD from .env file.
Run from project root: python scripts/seed_admin.py
"""

import sys
import os

# Add project root to path
project_root = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, project_root)

from dotenv import load_dotenv
load_dotenv(os.path.join(project_root, ".env"))

import bcrypt
from src.db import supabase


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode()


def main():
    email = (os.getenv("ADMIN_EMAIL") or "").strip().lower()
    password = os.getenv("ADMIN_PASSWORD")

    if not email or not password:
        print("Error: ADMIN_EMAIL and ADMIN_PASSWORD must be set in .env")
        sys.exit(1)

    existing = supabase.table("admin_users").select("id").eq("email", email).execute()
    if existing.data:
        print(f"Admin with email '{email}' already exists.")
        sys.exit(0)

    result = supabase.table("admin_users").insert({
        "email": email,
        "password_hash": hash_password(password),
        "name": "Console Admin",
    }).execute()

    if result.data:
        admin = result.data[0]
        print("Created admin:")
        print(f"  ID: {admin['id']}")
        print(f"  Email: {admin['email']}")
    else:
        print("Error: Failed to create admin")
        sys.exit(1)


if __name__ == "__main__":
    main()
