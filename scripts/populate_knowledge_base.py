#!/usr/bin/env python3
"""
Script to seed the Elasticsearch knowledge base with sample articles.
Articles go through the knowledge agent so every stored embedding matches
the article's current title and content.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from datetime import datetime
from typing import Any, Dict, List

# Add the project root to the path
project_root = Path(__file__).parent.parent
sys.path.append(str(project_root))

from helpdesk_ai.agents.knowledge_agent import KnowledgeAgent
from helpdesk_ai.models.schemas import KnowledgeArticle
from helpdesk_ai.services.embedding_service import EmbeddingService
from helpdesk_ai.services.vector_index import ElasticsearchVectorIndex


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
    """Load knowledge base articles from a JSON file"""
    if not data_file.exists():
        print_error(f"Sample data file not found: {data_file}")
        return []

    try:
        with open(data_file, 'r', encoding='utf-8') as f:
            data = json.load(f)
        print_status(f"Loaded {len(data)} sample articles")
        return data
    except (OSError, json.JSONDecodeError) as e:
        print_error(f"Failed to load sample data: {e}")
        return []


def create_knowledge_article(article_data: Dict[str, Any],
                             account_id: str) -> KnowledgeArticle:
    """Create a KnowledgeArticle object from raw data"""
    return KnowledgeArticle(
        id=article_data["id"],
        account_id=article_data.get("account_id", account_id),
        title=article_data["title"],
        content=article_data["content"],
        category=article_data.get("category"),
        tags=article_data.get("tags", []),
        published=article_data.get("published", True),
        created_at=datetime.fromisoformat(article_data["created_at"])
        if article_data.get("created_at") else datetime.now()
    )


async def populate_knowledge_base(knowledge_agent: KnowledgeAgent,
                                  articles: List[KnowledgeArticle]) -> int:
    """Index articles, re-embedding any whose content changed"""
    print_info("Populating knowledge base...")
    success_count = 0

    for i, article in enumerate(articles):
        try:
            existing = await knowledge_agent.get_article(article.id)
            if existing is None:
                await knowledge_agent.add_article(article)
            else:
                await knowledge_agent.update_article(
                    article.id,
                    title=article.title,
                    content=article.content,
                    category=article.category,
                    tags=article.tags,
                    published=article.published
                )
            success_count += 1
        except Exception as e:
            print_error(f"Failed to index article {article.id}: {e}")
        print_progress(i + 1, len(articles), "articles")

    print_status(
        f"Successfully indexed {success_count}/{len(articles)} articles")
    return success_count


async def verify_knowledge_base(knowledge_agent: KnowledgeAgent,
                                account_id: str, query: str) -> bool:
    """Run one search to check the index answers"""
    print_info(f"Verifying knowledge base with query: {query!r}")
    results = await knowledge_agent.search(query, account_id, top_k=3,
                                           min_relevance=0.0)
    if not results:
        print_error("Knowledge base verification failed - no search results found")
        return False

    top_result = results[0]
    print_status(f"Found {len(results)} results")
    print_info(f"Top result: '{top_result.article.title}' "
               f"(relevance: {top_result.relevance:.3f})")
    return True


async def main():
    parser = argparse.ArgumentParser(description="Seed the knowledge base")
    parser.add_argument("--file", type=Path,
                        default=project_root / "data" / "sample_knowledge_base.json")
    parser.add_argument("--account-id", default="demo-account")
    parser.add_argument("--verify-query", default="I was charged twice")
    args = parser.parse_args()

    print("📚 Knowledge Base Population Script")
    print("=" * 50)

    vector_index = ElasticsearchVectorIndex()
    if not await vector_index.initialize():
        print_error("Could not connect to Elasticsearch")
        sys.exit(1)

    knowledge_agent = KnowledgeAgent(EmbeddingService(), vector_index)
    try:
        raw_articles = load_sample_data(args.file)
        if not raw_articles:
            sys.exit(1)

        articles = [create_knowledge_article(a, args.account_id)
                    for a in raw_articles]
        if await populate_knowledge_base(knowledge_agent, articles) == 0:
            print_error("Failed to populate knowledge base")
            sys.exit(1)

        await verify_knowledge_base(knowledge_agent, args.account_id,
                                    args.verify_query)
    finally:
        await vector_index.close()


if __name__ == "__main__":
    asyncio.run(main())
