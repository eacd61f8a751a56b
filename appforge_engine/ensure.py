from typing import Awaitable, Callable, Optional, Tuple, TypeVar

from .logger_setup import logger

T = TypeVar("T")


async def ensure_resource(lookup: Callable[[], Awaitable[Optional[T]]],
                          create: Callable[[], Awaitable[T]],
                          description: str) -> Tuple[T, bool]:
    """Returns (resource, existed_before). `create` is only called when `lookup` finds nothing."""
    existing = await lookup()
    if existing is not None:
        logger.info(f"Found existing {description}, reusing it.")
        return existing, True

    logger.info(f"No {description} found, creating it...")
    created = await create()
    return created, False
