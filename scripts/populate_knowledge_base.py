#!/usr/bin/env python3
"""
Script to seed the knowledge base with sample articles.
Each article is chunked, embedded and indexed through the knowledge publisher,
the same path approved learning proposals take.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import List, Dict, Any

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from config.settings import configure_logging
from support_inbox.agents.knowledge_agent import duplicate_detector, knowledge_publisher
from support_inbox.services.embedding_service import embedding_service
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


def print_progress(current, total, item_name="items"):
    """Print progress"""
    percent = (current / total) * 100
    print(f"📊 Progress: {current}/{total} {item_name} ({percent:.1f}%)")


def load_sample_data(data_file: Path) -> List[Dict[str, Any]]:
    """Load sample knowledge base data"""
    if not data_file.exists():
        print_error(f"Sample data file not found: {data_file}")
        return []

    try:
        with open(data_file, 'r', encoding='utf-8') as f:
            data = json.load(f)

        print_status(f"Loaded {len(data)} sample articles")
        return data

    except Exception as e:
        print_error(f"Failed to load sample data: {e}")
        return []


async def test_services() -> bool:
    """Test that required services are available"""
    print_info("Testing services...")

    if not await vector_index.initialize():
        print_error("Could not initialize the vector index")
        return False
    print_status("Vector index OK")

    try:
        test_embedding = await embedding_service.embed("test")
        print_status(f"Embedding service OK (dimension: {len(test_embedding)})")
    except Exception as e:
        print_error(f"Embedding service failed: {e}")
        return False

    return True


async def populate_knowledge_base(articles: List[Dict[str, Any]]) -> int:
    """Publish every article, skipping the ones that are already present"""
    success_count = 0

    for i, article in enumerate(articles):
        try:
            duplicate = await duplicate_detector.check(article["body"])
            if duplicate.is_duplicate:
                print_info(f"Skipping '{article['title']}', similar to "
                           f"'{duplicate.existing_doc_title}' ({duplicate.similarity:.2f})")
            else:
                await knowledge_publisher.publish_kb_article(
                    article["title"],
                    article["body"],
                    source="seed",
                    intent_tags=article.get("intent_tags", [])
                )
                success_count += 1
        except Exception as e:
            print_error(f"Failed to add article '{article.get('title', 'unknown')}': {e}")

        print_progress(i + 1, len(articles), "articles")

    print_status(f"Successfully added {success_count}/{len(articles)} articles to knowledge base")
    return success_count


async def main():
    """Main function"""
    configure_logging()
    print("📚 Knowledge Base Population Script")
    print("=" * 50)

    data_file = Path(sys.argv[1]) if len(sys.argv) > 1 else project_root / "data" / "sample_knowledge_base.json"

    try:
        if not await test_services():
            print_error("Service tests failed. Please check your setup.")
            sys.exit(1)

        articles = load_sample_data(data_file)
        if not articles:
            print_error("No sample data to process")
            sys.exit(1)

        await populate_knowledge_base(articles)
    finally:
        await vector_index.close()

    print("\n" + "=" * 50)
    print_status("Knowledge base population completed")


if __name__ == "__main__":
    asyncio.run(main())
