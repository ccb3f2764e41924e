"""
Session service API.

Sessions run on a background thread; callers hold a ``SessionHandle`` to
cancel them or wait for the ``FinalResult``.
"""

import logging
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass

from neurassembly.optimizer.config import OptimizerConfig
from neurassembly.optimizer.core import FinalResult, OptimizationSession, SessionState

logger = logging.getLogger("neurassembly.optimizer")


@dataclass
class SessionHandle:
    session: OptimizationSession
    future: Future

    @property
    def state(self) -> SessionState:
        return self.session.state

    def done(self) -> bool:
        return self.future.done()


def start_session(
    code: bytes,
    arch: str = "x86_64",
    config: OptimizerConfig | None = None,
    **options,
) -> SessionHandle:
    """
    Start an optimization session in the background.

    Args:
        code: Machine code to optimize
        arch: Architecture name
        config: Session configuration
        **options: Further ``OptimizationSession`` keyword arguments
            (base_address, exit, proposer, llm_client, ...)

    Returns:
        Handle for ``cancel`` and ``await_result``

    Raises:
        UnsupportedArchitecture: Immediately, if ``arch`` is not registered
    """
    session = OptimizationSession(code, arch, config, **options)
    executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="session")
    future = executor.submit(session.run)
    executor.shutdown(wait=False)
    logger.info(f"Started {session.architecture.name} session on {len(session.code)} bytes")
    return SessionHandle(session, future)


def cancel(handle: SessionHandle) -> None:
    handle.session.cancel()


def await_result(handle: SessionHandle, timeout: float | None = None) -> FinalResult:
    """
    Wait for a session to finish.

    Args:
        handle: Handle returned by ``start_session``
        timeout: Seconds to wait, or None to wait indefinitely

    Returns:
        The session's FinalResult

    Raises:
        SessionFailed: If the session hit a fatal error
        SessionCancelled: If the session was cancelled
        TimeoutError: If ``timeout`` elapsed first
    """
    return handle.future.result(timeout=timeout)
