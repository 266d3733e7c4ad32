#!/usr/bin/env python3
"""
Script to set up the persistent stores for the Support Inbox Engine.
Creates the sqlite schema and, when the Elasticsearch backend is selected,
the knowledge chunk index.
"""

import asyncio
import sys
from pathlib import Path

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from config.settings import settings, configure_logging
from support_inbox.services.store import support_store
from support_inbox.services.vector_index import vector_index


def print_status(message):
    """Print status message"""
    print(f"✅ {message}")


def print_error(message):
    """Print error message"""
    print(f"❌ {message}")


def print_info(message):
    """Print info message"""
    print(f"ℹ️  {message}")


def setup_database() -> bool:
    """Create the sqlite schema"""
    print_info(f"Preparing support store at {settings.DATABASE_PATH}...")
    try:
        support_store.initialize()
        print_status("Support store schema ready")
        return True
    except Exception as e:
        print_error(f"Failed to create support store schema: {e}")
        return False


async def setup_vector_index() -> bool:
    """Connect to the vector backend and create the chunk index"""
    print_info(f"Preparing vector index ({settings.VECTOR_BACKEND})...")
    try:
        if not await vector_index.initialize():
            print_error("Could not initialize the vector index")
            if settings.VECTOR_BACKEND == "elasticsearch":
                print_info(f"Make sure Elasticsearch is running on {settings.ELASTICSEARCH_URL}")
            return False
        print_status("Vector index ready")
        return True
    finally:
        await vector_index.close()


async def main():
    """Main setup function"""
    configure_logging()
    print("🔧 Store Setup for the Support Inbox Engine")
    print("=" * 50)

    if not setup_database():
        sys.exit(1)

    if not await setup_vector_index():
        sys.exit(1)

    print("\n" + "=" * 50)
    print_status("Setup complete!")
    print("\nNext steps:")
    print("1. Seed the knowledge base: python scripts/populate_knowledge_base.py")
    print("2. Set SHOPIFY_*, SMTP_* and GEMINI_API_KEY in .env to enable the integrations")


if __name__ == "__main__":
    asyncio.run(main())
