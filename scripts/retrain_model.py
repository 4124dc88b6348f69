#!/usr/bin/env python3
"""
Train (or retrain) a user's categorization model right now, in this process.

Usage:
    python scripts/retrain_model.py <user_id> [--predict "Coffee shop" 5.25]

Example:
    DATABASE_URL=postgresql://... python scripts/retrain_model.py 42 --predict "Uber trip" 18.40
"""
import argparse
import asyncio
import os
import sys

# Add parent directory to path so we can import modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from packages.common.config import get_settings
from packages.common.database import sessionmanager
from packages.common.log_config import configure_logging
from packages.domain.categorization import prediction_service, training_orchestrator


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Train a user's expense categorization model")
    parser.add_argument("user_id", help="User whose categorized expenses are used")
    parser.add_argument(
        "--predict",
        nargs=2,
        metavar=("DESCRIPTION", "AMOUNT"),
        help="Run one prediction after training",
    )
    return parser.parse_args()


async def main():
    args = parse_args()
    settings = get_settings()
    configure_logging(settings.log_level)
    await sessionmanager.init(settings.database_url)

    try:
        print(f"Training model for user {args.user_id}...")
        trained = await training_orchestrator.train_model(args.user_id)
        status = await training_orchestrator.status(args.user_id)

        print("\nResult:")
        print(f"  Trained: {trained}")
        print(f"  State: {status.state.value}")
        print(f"  Categorized expenses: {status.categorized_expenses}")
        if status.manifest:
            print(f"  Generation: {status.manifest.generation}")
            print(f"  Vocabulary size: {status.manifest.input_width - 1}")
            print(f"  Categories: {status.manifest.output_width}")
            if status.manifest.metrics:
                print(f"  Loss: {status.manifest.metrics.loss:.4f}")
                print(f"  Validation accuracy: {status.manifest.metrics.validation_accuracy}")

        if args.predict:
            description, amount = args.predict
            result = await prediction_service.predict_category(description, float(amount), args.user_id)
            print(f"\nPrediction for {description!r} ${float(amount):.2f}:")
            print(f"  Category: {result.category_id}")
            print(f"  Confidence: {result.confidence:.0%}")
            print(f"  Source: {result.source.value}")
    finally:
        await sessionmanager.close()


if __name__ == "__main__":
    asyncio.run(main())
