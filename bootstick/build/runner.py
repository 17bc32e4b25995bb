"""Run-level lifecycle of a build.

One ledger per run. Whatever ends the pipeline (success, an error, or
SIGINT/SIGTERM) the ledger is drained exactly once, with further interrupt
signals ignored while it drains. A partially written output image is
deleted on failure. After an interrupt has been cleaned up, the same signal
is re-delivered with its default disposition so the caller observes the
conventional termination status.
"""

from __future__ import annotations

import os
import signal
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Iterator, Optional

from bootstick.build.exceptions import BuildError, BuildInterrupted
from bootstick.build.pipeline import BuildPipeline, BuildSummary
from bootstick.config.settings import BuildSettings
from bootstick.domain.models import BuildIdentity, BuildOptions
from bootstick.logging import LoggerFactory
from bootstick.storage.exceptions import LedgerUnwindError, StorageError
from bootstick.storage.ledger import Ledger


INTERRUPT_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def ignore_interrupts() -> None:
    for signum in INTERRUPT_SIGNALS:
        signal.signal(signum, signal.SIG_IGN)


def _raise_interrupted(signum, _frame) -> None:
    # Only the first interrupt aborts the run. Later ones are ignored.
    ignore_interrupts()
    raise BuildInterrupted(signum)


@contextmanager
def interrupt_handlers(handler: Callable = _raise_interrupted) -> Iterator[None]:
    """Install ``handler`` for SIGINT and SIGTERM, restoring the previous ones."""
    previous = {signum: signal.getsignal(signum) for signum in INTERRUPT_SIGNALS}
    for signum in INTERRUPT_SIGNALS:
        signal.signal(signum, handler)
    try:
        yield
    finally:
        for signum, old_handler in previous.items():
            signal.signal(signum, old_handler)


def reraise_signal(signum: int) -> None:
    """Terminate with ``signum`` under its default disposition.

    When this process leads its own process group the whole group is
    signalled, so helpers still running in it go down too. Otherwise only
    this process is, leaving a calling script's group alone.
    """
    signal.signal(signum, signal.SIG_DFL)
    if os.getpgrp() == os.getpid():
        os.killpg(os.getpgrp(), signum)
    else:
        os.kill(os.getpid(), signum)


def remove_partial_output(path: Path) -> None:
    log = LoggerFactory.for_system()
    if path.exists() and not path.is_dir():
        path.unlink()
        log.info(f"Removed partial output image {path}")


def run_build(
    options: BuildOptions,
    settings: Optional[BuildSettings] = None,
    *,
    ledger: Optional[Ledger] = None,
    identity: Optional[BuildIdentity] = None,
) -> BuildSummary:
    """Build ``options.output_image`` and leave the host as it was found.

    Raises:
        BuildError: On build failure, after cleanup. BuildInterrupted is only
            seen by callers when re-delivering the signal did not terminate
            the process.
        StorageError: On host storage failures, after cleanup.
    """
    settings = settings or BuildSettings.from_settings()
    ledger = ledger if ledger is not None else Ledger()
    identity = identity or BuildIdentity.generate(settings.vg_prefix)
    log = LoggerFactory.for_build(identity.build_id)
    pipeline = BuildPipeline(
        options=options, settings=settings, ledger=ledger, identity=identity
    )

    error: Optional[BaseException] = None
    summary: Optional[BuildSummary] = None
    with interrupt_handlers():
        try:
            try:
                summary = pipeline.run()
            finally:
                ignore_interrupts()
        except BaseException as exc:
            error = exc

        pending = ledger.descriptions()
        if pending:
            log.debug(f"Unwinding: {', '.join(pending)}")
        try:
            ledger.undo_all()
        except LedgerUnwindError as unwind_error:
            log.opt(exception=unwind_error.first_error).error(
                f"Cleanup incomplete: {unwind_error}"
            )
            if error is None:
                error = unwind_error
        else:
            log.debug(f"Unwound {len(pending)} ledger entries")
        if error is not None and pipeline.output_created:
            remove_partial_output(options.output_image)

    if error is None:
        log.success(
            f"Image {summary.output_image} ready ({summary.final_size_kb} KB)"
        )
        return summary

    if isinstance(error, BuildInterrupted):
        log.warning(f"{error}; cleanup finished at stage {pipeline.stage.value}")
        reraise_signal(error.signum)
    elif isinstance(error, (BuildError, StorageError)):
        log.error(f"Build failed at stage {pipeline.stage.value}: {error}")
    else:
        log.opt(exception=error).critical(
            f"Unexpected error at stage {pipeline.stage.value}"
        )
    raise error
