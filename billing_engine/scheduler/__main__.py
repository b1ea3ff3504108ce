"""
Entry point for running the billing scheduler as a module.

Usage: python -m billing_engine.scheduler
"""
import asyncio
from billing_engine.scheduler.billing_scheduler import main

if __name__ == "__main__":
    asyncio.run(main())
