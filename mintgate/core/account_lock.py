# /mintgate/core/account_lock.py
# One processor process per signing account. The in-process nonce mutex cannot
# see other processes, so this exclusive lock file is what keeps a second
# instance from allocating nonces for the same account.

import os, fcntl

from mintgate.core.errors import AccountLockedError
from mintgate.core.logger import get_logger

log = get_logger(__name__)


class AccountLock:
    def __init__(self, address: str, session_dir: str):
        self.address = address
        self.path = os.path.join(session_dir, f"{address.lower()}.lock")
        os.makedirs(session_dir, exist_ok=True)
        self._fd = None

    def acquire(self):
        fd = open(self.path, "a+")
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            fd.close()
            log.critical("ACCOUNT_LOCK_HELD_ELSEWHERE", address=self.address, path=self.path)
            raise AccountLockedError(f"another process is running a processor for {self.address}")
        fd.seek(0)
        fd.truncate()
        fd.write(str(os.getpid()))
        fd.flush()
        self._fd = fd
        log.info("ACCOUNT_LOCK_ACQUIRED", address=self.address)

    @property
    def held(self) -> bool:
        return self._fd is not None

    def release(self):
        if self._fd:
            fcntl.flock(self._fd, fcntl.LOCK_UN)
            self._fd.close()
            self._fd = None
            log.info("ACCOUNT_LOCK_RELEASED", address=self.address)
