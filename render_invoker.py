import asyncio
import codecs
import logging
import os
import shlex
import signal
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from job_errors import IncompleteOutputError, RenderError, RenderExitError, RenderTimeout, SpawnError
from job_models import OUTPUT_FILES
from job_store import OUT_DIR
from settings import DEFAULT_PROCESSING_ARGS

logger = logging.getLogger("pembroider_service.invoker")

READ_CHUNK = 64 * 1024
EXIT_POLL_SECONDS = 0.05
# How long to keep draining pipes after the renderer exits; a stray grandchild
# can hold them open indefinitely.
PIPE_DRAIN_SECONDS = 5.0
KILL_WAIT_SECONDS = 5.0


class OutputCapture:
    """Accumulates decoded process output, keeping the most recent ``limit`` characters."""

    def __init__(self, limit: int):
        self.limit = limit
        self.dropped = 0
        self._buffer = ""

    def append(self, text: str) -> None:
        if not text:
            return
        self._buffer += text
        overflow = len(self._buffer) - self.limit
        if overflow > 0:
            self._buffer = self._buffer[overflow:]
            self.dropped += overflow

    def text(self) -> str:
        if self.dropped:
            return f"[... {self.dropped} earlier characters truncated ...]\n{self._buffer}"
        return self._buffer


@dataclass
class RenderResult:
    command: List[str]
    exit_code: Optional[int] = None
    stdout: str = ""
    stderr: str = ""
    duration_seconds: float = 0.0
    timed_out: bool = False
    canceled: bool = False
    error: Optional[RenderError] = None

    @property
    def ok(self) -> bool:
        return self.error is None and not self.canceled

    @property
    def command_line(self) -> str:
        return shlex.join(self.command)


class RenderInvoker:
    def __init__(
        self,
        *,
        renderer_bin: str,
        sketch: Path,
        wrapper: Optional[str] = None,
        wrapper_args: Sequence[str] = (),
        args_template: str = DEFAULT_PROCESSING_ARGS,
        timeout_seconds: float = 120.0,
        output_limit_chars: int = 256 * 1024,
        log_output: bool = False,
        pipe_drain_seconds: float = PIPE_DRAIN_SECONDS,
    ):
        self.renderer_bin = renderer_bin
        self.sketch = Path(sketch)
        self.wrapper = wrapper or None
        self.wrapper_args = list(wrapper_args)
        self.args_template = args_template
        self.timeout_seconds = timeout_seconds
        self.output_limit_chars = output_limit_chars
        self.log_output = log_output
        self.pipe_drain_seconds = pipe_drain_seconds

    def build_command(self, job_dir: Path) -> List[str]:
        renderer_args = [
            token.replace("{sketch}", str(self.sketch)).replace("{job_dir}", str(job_dir))
            for token in shlex.split(self.args_template)
        ]
        if self.wrapper:
            return [self.wrapper, *self.wrapper_args, self.renderer_bin, *renderer_args]
        return [self.renderer_bin, *renderer_args]

    async def invoke(self, job_dir: Path, cancel_event: Optional[asyncio.Event] = None) -> RenderResult:
        """Run the renderer against ``job_dir`` and classify how it ended.

        The process is killed outright when the timeout elapses or
        ``cancel_event`` is set. Success needs exit code 0 and both output
        files in ``out/``.
        """
        job_dir = Path(job_dir)
        job_id = job_dir.name
        command = self.build_command(job_dir)
        result = RenderResult(command=command)

        logger.info("job %s: renderer start", job_id)
        logger.info("job %s: renderer cmd: %s", job_id, result.command_line)
        start = time.perf_counter()
        try:
            proc = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(job_dir),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=dict(os.environ),
                start_new_session=True,
            )
        except OSError as exc:
            result.error = SpawnError(str(exc))
            result.duration_seconds = time.perf_counter() - start
            logger.error("job %s: renderer failed to start: %s", job_id, exc)
            return result

        stdout = OutputCapture(self.output_limit_chars)
        stderr = OutputCapture(self.output_limit_chars)
        pumps = [
            asyncio.create_task(self._pump(proc.stdout, stdout, job_id, "stdout")),
            asyncio.create_task(self._pump(proc.stderr, stderr, job_id, "stderr")),
        ]
        exit_wait = asyncio.ensure_future(self._wait_exit(proc))
        waiters = {exit_wait}
        cancel_wait = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(waiters, timeout=self.timeout_seconds, return_when=asyncio.FIRST_COMPLETED)
            if exit_wait not in done:
                if cancel_wait is not None and cancel_wait in done:
                    result.canceled = True
                    logger.info("job %s: cancel requested; killing renderer (pid=%s)", job_id, proc.pid)
                elif proc.returncode is None:
                    result.timed_out = True
                    logger.warning(
                        "job %s: renderer exceeded %.1fs timeout; killing (pid=%s)",
                        job_id,
                        self.timeout_seconds,
                        proc.pid,
                    )
                self._kill_group(proc)
                try:
                    await asyncio.wait_for(exit_wait, timeout=KILL_WAIT_SECONDS)
                except asyncio.TimeoutError:
                    logger.error("job %s: renderer (pid=%s) still running after SIGKILL", job_id, proc.pid)
            _, pending = await asyncio.wait(pumps, timeout=self.pipe_drain_seconds)
            if pending:
                # The renderer is gone but something it started still holds its pipes.
                logger.warning("job %s: output pipes still open after exit; killing leftover processes", job_id)
                self._kill_group(proc)
                for task in pending:
                    task.cancel()
        except asyncio.CancelledError:
            self._kill_group(proc)
            exit_wait.cancel()
            for task in pumps:
                task.cancel()
            raise
        finally:
            if cancel_wait is not None:
                cancel_wait.cancel()

        result.exit_code = proc.returncode
        result.stdout = stdout.text()
        result.stderr = stderr.text()
        result.duration_seconds = time.perf_counter() - start

        if result.canceled:
            logger.info("job %s: renderer canceled after %.2fs", job_id, result.duration_seconds)
            return result
        if result.timed_out:
            result.error = RenderTimeout(
                f"Renderer did not finish within {self.timeout_seconds:g}s and was killed."
            )
        elif proc.returncode != 0:
            result.error = RenderExitError(f"Renderer exited with code {proc.returncode}.")
        else:
            missing = [name for name in OUTPUT_FILES if not (job_dir / OUT_DIR / name).is_file()]
            if missing:
                result.error = IncompleteOutputError(
                    f"Renderer exited with code 0 but did not write: {', '.join(missing)}."
                )

        if result.error is not None:
            logger.error(
                "job %s: %s (exit=%s, %.2fs)",
                job_id,
                result.error.message,
                result.exit_code,
                result.duration_seconds,
            )
        else:
            logger.info("job %s: renderer finished in %.2fs", job_id, result.duration_seconds)
        return result

    async def _pump(self, stream: asyncio.StreamReader, capture: OutputCapture, job_id: str, label: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            chunk = await stream.read(READ_CHUNK)
            if not chunk:
                break
            text = decoder.decode(chunk)
            capture.append(text)
            if self.log_output and text.strip():
                logger.info("[renderer %s %s] %s", job_id, label, text.rstrip())
        capture.append(decoder.decode(b"", final=True))

    @staticmethod
    async def _wait_exit(proc: asyncio.subprocess.Process) -> int:
        # Process.wait() also waits for the pipes to close, which a leftover
        # child can hold open; the return code is set as soon as the renderer exits.
        while proc.returncode is None:
            await asyncio.sleep(EXIT_POLL_SECONDS)
        return proc.returncode

    @staticmethod
    def _kill_group(proc: asyncio.subprocess.Process) -> None:
        try:
            if hasattr(os, "killpg"):
                # The renderer runs in its own session, so this also reaches
                # whatever the headless wrapper started, even after the
                # renderer itself has exited.
                os.killpg(proc.pid, signal.SIGKILL)
            elif proc.returncode is None:
                proc.kill()
        except ProcessLookupError:
            pass
        except PermissionError:
            if proc.returncode is None:
                proc.kill()
