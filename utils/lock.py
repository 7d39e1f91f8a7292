# utils/lock.py
import os
import re
import sys
import logging
import atexit
import errno

if sys.platform == 'win32':
    import msvcrt
else:
    import fcntl

logger = logging.getLogger(__name__)
_LOCK_HANDLES = {}

def lock_file_for_port(lock_dir: str, base_name: str, port_name: str) -> str:
    """
    Returns the lock file path guarding one serial port.

    '/dev/ttyXRUSB0' with base name 'tracer_monitoring.lock' becomes
    '<lock_dir>/tracer_monitoring_ttyXRUSB0.lock'.
    """
    port_tag = re.sub(r'[^A-Za-z0-9]+', '_', os.path.basename(port_name)).strip('_') or "port"
    stem, ext = os.path.splitext(base_name)
    return os.path.join(lock_dir, f"{stem}_{port_tag}{ext}")

def acquire_lock(lock_file_path: str) -> bool:
    """
    Acquires an exclusive, non-blocking lock on `lock_file_path`.

    Used to make sure only one monitoring process talks to a given serial port.
    The lock is released automatically at exit.

    Returns:
        True if the lock was acquired, False if another process holds it or the file
        cannot be created.
    """
    if lock_file_path in _LOCK_HANDLES:
        return True
    handle = None
    try:
        handle = open(lock_file_path, 'a+', buffering=1)
        if sys.platform == 'win32':
            msvcrt.locking(handle.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            fcntl.lockf(handle, fcntl.LOCK_EX | fcntl.LOCK_NB)

        handle.seek(0)
        handle.truncate()
        handle.write(str(os.getpid()))
        handle.flush()
        _LOCK_HANDLES[lock_file_path] = handle
        atexit.register(release_lock, lock_file_path)
        logger.info(f"Acquired lock: {lock_file_path}")
        return True
    except OSError as e:
        if e.errno in (errno.EACCES, errno.EAGAIN) or 'locked' in str(e).lower():
            logger.error(f"Lock {lock_file_path} is held by another process.")
        else:
            logger.critical(f"Could not create or lock file '{lock_file_path}': {e}. Check permissions.")
        if handle:
            handle.close()
        return False

def release_lock(lock_file_path: str) -> None:
    """Releases a lock taken with acquire_lock() and removes its file. Safe to call twice."""
    handle = _LOCK_HANDLES.pop(lock_file_path, None)
    if not handle:
        return
    try:
        if sys.platform == 'win32':
            msvcrt.locking(handle.fileno(), msvcrt.LK_UNLCK, 1)
        else:
            fcntl.lockf(handle, fcntl.LOCK_UN)
    except OSError as e:
        logger.warning(f"Could not cleanly release lock file: {e}")
    finally:
        handle.close()
    try:
        os.remove(lock_file_path)
        logger.info(f"Lock file {lock_file_path} cleaned up.")
    except OSError:
        pass
