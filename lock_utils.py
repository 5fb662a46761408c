"""
Lock utilities for the intelligent cache components.
Provides a coordinated lock management system to prevent deadlocks.
"""

import threading
import time
import logging
from contextlib import contextmanager
from typing import Dict, Any, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Global lock registry to track lock order and detect potential deadlocks
_lock_registry: Dict[int, Dict[str, Any]] = {}
_thread_lock_stack: Dict[int, List[threading.RLock]] = {}
_global_registry_lock = threading.RLock()

# Lock hierarchy levels - higher levels must be acquired first
LOCK_HIERARCHY = {
    "cache_scheduler": 100,
    "cache_persistence": 90,
    "cache_store": 80,
    "cache_inflight": 70,
    "cache_statistics": 60,
    "tag_index": 50,
    "keyword_memo": 40,
}

DEFAULT_LOCK_TIMEOUT = 10.0


class LockOrderViolation(Exception):
    """Exception raised when locks are acquired out of order."""

    pass


class LockTimeout(Exception):
    """Exception raised when a lock cannot be acquired within the timeout."""

    pass


def get_hierarchy_level(lock_name: str) -> int:
    """Get the hierarchy level for a lock name."""
    for prefix, level in LOCK_HIERARCHY.items():
        if lock_name.startswith(prefix):
            return level
    return 0  # Default level for unnamed locks


def register_lock(lock_obj: threading.RLock, name: str) -> None:
    """
    Register a lock with the given name in the global registry.

    Args:
        lock_obj: The lock object
        name: A unique name for the lock, used for hierarchy
    """
    with _global_registry_lock:
        _lock_registry[id(lock_obj)] = {
            "name": name,
            "level": get_hierarchy_level(name),
            "object": lock_obj,
        }
        logger.debug(f"Registered lock: {name} with level {get_hierarchy_level(name)}")


def unregister_lock(lock_obj: threading.RLock) -> None:
    """Remove a lock from the registry."""
    with _global_registry_lock:
        info = _lock_registry.pop(id(lock_obj), None)
        if info is not None:
            logger.debug(f"Unregistered lock: {info['name']}")


@contextmanager
def coordinated_lock(
    lock_obj: threading.RLock,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
    name: Optional[str] = None,
) -> Iterator[None]:
    """
    Context manager for acquiring locks in a coordinated manner that prevents deadlocks.

    Args:
        lock_obj: The lock to acquire
        timeout: Maximum time to wait for lock acquisition in seconds
        name: Optional name for unregistered locks

    Raises:
        LockOrderViolation: If acquiring this lock would violate the hierarchy
        LockTimeout: If the lock cannot be acquired within the timeout
    """
    thread_id = threading.get_ident()
    lock_id = id(lock_obj)

    # Reentrant acquisition by the same thread
    thread_locks = _thread_lock_stack.setdefault(thread_id, [])
    if any(held is lock_obj for held in thread_locks):
        yield
        return

    with _global_registry_lock:
        if lock_id not in _lock_registry and name:
            register_lock(lock_obj, name)

        lock_info = _lock_registry.get(lock_id, {"name": "unnamed", "level": 0})

        for held_lock in thread_locks:
            held_lock_info = _lock_registry.get(
                id(held_lock), {"name": "unknown", "level": 0}
            )
            if held_lock_info["level"] < lock_info["level"]:
                error_msg = (
                    f"Lock order violation: trying to acquire {lock_info['name']} "
                    f"(level {lock_info['level']}) while holding {held_lock_info['name']} "
                    f"(level {held_lock_info['level']})"
                )
                logger.error(error_msg)
                raise LockOrderViolation(error_msg)

    start_time = time.monotonic()
    while True:
        if lock_obj.acquire(blocking=False):
            try:
                thread_locks.append(lock_obj)
                yield
            finally:
                if lock_obj in thread_locks:
                    thread_locks.remove(lock_obj)
                lock_obj.release()
            return

        if time.monotonic() - start_time > timeout:
            error_msg = (
                f"Timeout waiting for lock {lock_info['name']} after {timeout} seconds"
            )
            logger.error(error_msg)
            raise LockTimeout(error_msg)

        # Small sleep to avoid CPU spinning
        time.sleep(0.001)


def create_component_lock(component_name: str) -> threading.RLock:
    """
    Create a registered lock for a cache component.

    Args:
        component_name: Name of the component; its prefix selects the
            hierarchy level (see LOCK_HIERARCHY)

    Returns:
        A registered RLock
    """
    lock = threading.RLock()
    register_lock(lock, component_name)
    return lock
