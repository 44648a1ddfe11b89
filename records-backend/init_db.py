import sys

from db_manager import ConfigurationError, create_database_manager


def main() -> int:
    print("🚀 Starting Database Initialization...")
    try:
        db = create_database_manager(auto_initialize=False)
    except ConfigurationError as e:
        print(f"❌ Database configuration error: {e}")
        return 1

    try:
        applied = db.initialize_database()
        if applied:
            print(f"🔄 Migrations applied: {', '.join(applied)}")
        print("✅ Database Initialization Complete.")
        return 0
    except db.errors as e:
        print(f"❌ Database Initialization Failed: {e}")
        return 1
    finally:
        db.close()


if __name__ == "__main__":
    sys.exit(main())
