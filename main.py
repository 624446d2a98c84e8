"""
Music cache - Main Entrypoint
Warms the cache: each argument (URL or search query) is resolved and downloaded.
"""
import asyncio
import logging
import sys

from app.config.settings import settings
from app.services.context import build_context
from app.utils.logging import setup_logging


async def main(items: list[str]) -> int:
    setup_logging()
    logger = logging.getLogger(__name__)

    ctx = build_context(settings)
    await ctx.start(background_cleanup=False)
    logger.info("Warming cache", extra={"env": settings.ENV, "items": len(items)})

    failures = 0
    try:
        for item in items:
            result = await ctx.downloads.materialize(item)
            if result.success:
                origin = "cached" if result.cached else "downloaded"
                print(f"{origin}\t{result.title}\t{result.file_path}")
            else:
                failures += 1
                print(f"failed\t{item}\t{result.error}", file=sys.stderr)
    finally:
        await ctx.close()
        logger.info("Done", extra={"failures": failures})
    return 1 if failures else 0


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("usage: python main.py <url-or-query> [...]", file=sys.stderr)
        sys.exit(2)
    try:
        sys.exit(asyncio.run(main(sys.argv[1:])))
    except KeyboardInterrupt:
        sys.exit(130)
