"""
Claude agent runner.

Spawns the agent with stream-json input and output, sends the prompt as a
single user message on stdin, and streams stdout through the stream parser.
Text is echoed to an observer as it arrives; usage records are summed.

stdout is read on the calling thread, stderr on a helper thread into a
bounded tail buffer. A timer enforces the wall-clock deadline: terminate
first, kill after a grace period.
"""

import json
import logging
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator, Optional

from storyforge.agents.permissions import Phase, phase_permissions
from storyforge.agents.stream import DELTA, MAX_LINE_BYTES, RESULT, TextFragment, UsageRecord, stream_items
from storyforge.lib.config import Config
from storyforge.lib.errors import ErrorKind, RunError
from storyforge.lib.stats import AgentStats, record_agent_stats
from storyforge.lib.summary import extract_work_summary
from storyforge.lib.usage import Usage

logger = logging.getLogger(__name__)

ALL_STORIES_COMPLETE = "ALL STORIES COMPLETE"

STREAM_ARGS = [
    "--print",
    "--output-format", "stream-json",
    "--input-format", "stream-json",
    "--verbose",
]

STDERR_TAIL_BYTES = 64 * 1024
KILL_GRACE_SECONDS = 5


class OutcomeKind(Enum):
    ITERATION_COMPLETE = "iteration_complete"
    ALL_STORIES_COMPLETE = "all_stories_complete"
    ERROR = "error"


@dataclass
class AgentOutcome:
    """Result of one agent invocation."""
    kind: OutcomeKind
    text: str = ""
    reply: Optional[str] = None
    usage: Usage = field(default_factory=Usage)
    work_summary: Optional[str] = None
    error: Optional[RunError] = None
    elapsed_seconds: float = 0.0
    interrupted: bool = False

    @property
    def ok(self) -> bool:
        return self.kind != OutcomeKind.ERROR

    @property
    def final_reply(self) -> str:
        """The agent's last message, where a verdict or answer belongs."""
        return self.reply if self.reply is not None else self.text


class _TailBuffer:
    """Keeps the last `limit` bytes written to it."""

    def __init__(self, limit: int):
        self.limit = limit
        self._buf = bytearray()
        self._lock = threading.Lock()

    def feed(self, chunk: bytes) -> None:
        with self._lock:
            self._buf += chunk
            overflow = len(self._buf) - self.limit
            if overflow > 0:
                del self._buf[:overflow]

    def text(self) -> str:
        with self._lock:
            return bytes(self._buf).decode("utf-8", errors="replace")


class _Transcript:
    """Assembles text fragments into the agent's messages.

    Deltas extend the message being streamed and a complete assistant
    message replaces the deltas streamed for it. The result event repeats
    the last message, so it only adds a message when its text differs.
    Messages are echoed as they grow, separated by newlines.
    """

    def __init__(self, observer: Optional[Callable[[str], None]] = None):
        self.observer = observer
        self.messages: list[str] = []
        self.result: Optional[str] = None
        self._streaming = False

    def _echo(self, text: str) -> None:
        if self.observer and text:
            self.observer(text)

    def _open(self, text: str) -> None:
        if self.messages:
            self._echo("\n")
        self.messages.append(text)
        self._echo(text)

    def add(self, fragment: TextFragment) -> None:
        if fragment.source == DELTA:
            if not fragment.text:
                return
            if self._streaming:
                self.messages[-1] += fragment.text
                self._echo(fragment.text)
            else:
                self._streaming = True
                self._open(fragment.text)
            return

        streamed, self._streaming = self._streaming, False
        if fragment.source == RESULT:
            self.result = fragment.text
            if fragment.text and (not self.messages or self.messages[-1] != fragment.text):
                self._open(fragment.text)
        elif streamed:
            self.messages[-1] = fragment.text
        else:
            self._open(fragment.text)

    @property
    def text(self) -> str:
        return "\n".join(self.messages)

    @property
    def reply(self) -> str:
        if self.result and self.result.strip():
            return self.result
        return self.messages[-1] if self.messages else ""


def _drain(stream, tail: _TailBuffer) -> None:
    try:
        for chunk in iter(lambda: stream.read1(4096), b""):
            tail.feed(chunk)
    except (OSError, ValueError):
        pass


def _write_prompt(stream, payload: bytes) -> None:
    try:
        stream.write(payload)
        stream.close()
    except (BrokenPipeError, OSError, ValueError) as e:
        # The exit status says why the child went away
        logger.warning(f"Could not write prompt to agent: {e}")


def read_bounded_lines(stream, limit: int = MAX_LINE_BYTES) -> Iterator[bytes]:
    """Yield lines from a binary stream, dropping any longer than limit.

    A final line without a trailing newline is still yielded.
    """
    while True:
        line = stream.readline(limit + 1)
        if not line:
            return
        if len(line) > limit and not line.endswith(b"\n"):
            logger.warning(f"Dropping agent output line longer than {limit} bytes")
            while line and not line.endswith(b"\n"):
                line = stream.readline(limit + 1)
            continue
        yield line


def build_user_message(prompt: str) -> str:
    """The stream-json user message carrying the prompt."""
    return json.dumps({
        "type": "user",
        "message": {"role": "user", "content": prompt},
    })


def process_failed_message(returncode: int, stderr: str) -> str:
    first = next((line.strip() for line in stderr.splitlines() if line.strip()), "")
    message = f"Claude exited with status {returncode}"
    return f"{message}: {first}" if first else message


class ClaudeRunner:
    """Runs the agent once per call to run()."""

    def __init__(
        self,
        config: Config,
        workdir: Path,
        observer: Optional[Callable[[str], None]] = None,
        stats_dir: Optional[Path] = None,
        run_id: str = "",
    ):
        self.config = config
        self.workdir = workdir
        self.observer = observer
        self.stats_dir = stats_dir
        self.run_id = run_id
        self._proc: Optional[subprocess.Popen] = None
        self._proc_lock = threading.Lock()
        self._interrupted = threading.Event()

    def build_command(self, phase: Phase) -> list[str]:
        return self.config.agent_argv + STREAM_ARGS + phase_permissions(phase, self.config.unrestricted)

    def terminate(self) -> None:
        """Stop the running agent, if any (terminate, then kill after a grace period).

        Safe to call from a signal handler; the wait happens on a helper thread.
        """
        self._interrupted.set()
        with self._proc_lock:
            proc = self._proc
        if proc is not None and proc.poll() is None:
            threading.Thread(target=self._stop_process, args=(proc,), daemon=True).start()

    @staticmethod
    def _stop_process(proc: subprocess.Popen) -> None:
        try:
            proc.terminate()
            proc.wait(timeout=KILL_GRACE_SECONDS)
        except subprocess.TimeoutExpired:
            logger.warning(f"Agent pid {proc.pid} ignored SIGTERM, killing")
            proc.kill()
        except OSError:
            pass

    def run(self, phase: Phase, prompt: str, story_id: Optional[str] = None) -> AgentOutcome:
        """Invoke the agent for one phase and wait for it to finish."""
        self._interrupted.clear()
        start = time.monotonic()
        outcome = self._run(phase, prompt, start)
        outcome.elapsed_seconds = time.monotonic() - start

        if outcome.error:
            outcome.error.phase = phase.value
            logger.info(f"Agent {phase.value} failed: {outcome.error}")
        else:
            logger.info(f"Agent {phase.value} finished: {outcome.kind.value} in {outcome.elapsed_seconds:.1f}s")

        if self.stats_dir is not None:
            record_agent_stats(self.stats_dir, AgentStats(
                timestamp=datetime.now(timezone.utc).isoformat(),
                run_id=self.run_id,
                phase=phase.value,
                elapsed_seconds=round(outcome.elapsed_seconds, 3),
                outcome=outcome.error.kind.value if outcome.error else outcome.kind.value,
                story_id=story_id,
                input_tokens=outcome.usage.input_tokens,
                output_tokens=outcome.usage.output_tokens,
                model=outcome.usage.model,
            ))
        return outcome

    def _run(self, phase: Phase, prompt: str, start: float) -> AgentOutcome:
        prompt_size = len(prompt.encode("utf-8"))
        if prompt_size > self.config.max_prompt_bytes:
            return AgentOutcome(
                kind=OutcomeKind.ERROR,
                error=RunError(
                    ErrorKind.INTERNAL,
                    f"Prompt is {prompt_size} bytes, limit is {self.config.max_prompt_bytes}",
                ),
            )

        cmd = self.build_command(phase)
        logger.debug(f"Spawning agent: {' '.join(cmd)}")
        try:
            proc = subprocess.Popen(
                cmd,
                cwd=str(self.workdir),
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
            )
        except OSError as e:
            return AgentOutcome(
                kind=OutcomeKind.ERROR,
                error=RunError(ErrorKind.SPAWN_FAILED, f"Failed to spawn {cmd[0]}: {e}"),
            )

        with self._proc_lock:
            self._proc = proc

        tail = _TailBuffer(STDERR_TAIL_BYTES)
        stderr_thread = threading.Thread(target=_drain, args=(proc.stderr, tail), daemon=True)
        stderr_thread.start()

        timed_out = threading.Event()

        def on_deadline():
            timed_out.set()
            logger.warning(f"Agent {phase.value} exceeded {self.config.timeout_seconds}s, terminating")
            self._stop_process(proc)

        payload = (build_user_message(prompt) + "\n").encode("utf-8")
        writer = threading.Thread(target=_write_prompt, args=(proc.stdin, payload), daemon=True)

        timer = threading.Timer(self.config.timeout_seconds, on_deadline)
        timer.daemon = True
        timer.start()

        transcript = _Transcript(self.observer)
        usage = Usage()
        try:
            writer.start()
            for raw_line in read_bounded_lines(proc.stdout):
                for item in stream_items(raw_line):
                    if isinstance(item, TextFragment):
                        transcript.add(item)
                    elif isinstance(item, UsageRecord):
                        usage = usage.add(item.usage)

            returncode = proc.wait()
        finally:
            timer.cancel()
            writer.join(timeout=KILL_GRACE_SECONDS)
            stderr_thread.join(timeout=KILL_GRACE_SECONDS)
            proc.stdout.close()
            proc.stderr.close()
            with self._proc_lock:
                self._proc = None

        text = transcript.text
        reply = transcript.reply
        stderr = tail.text()

        if timed_out.is_set():
            elapsed = time.monotonic() - start
            return AgentOutcome(
                kind=OutcomeKind.ERROR,
                text=text,
                usage=usage,
                error=RunError(
                    ErrorKind.TIMEOUT,
                    f"{phase.value} timed out after {elapsed:.0f}s",
                    stderr=stderr or None,
                ),
            )

        if self._interrupted.is_set():
            return AgentOutcome(
                kind=OutcomeKind.ERROR,
                text=text,
                usage=usage,
                interrupted=True,
                error=RunError(ErrorKind.INTERNAL, f"{phase.value} interrupted", stderr=stderr or None),
            )

        if returncode != 0:
            return AgentOutcome(
                kind=OutcomeKind.ERROR,
                text=text,
                usage=usage,
                error=RunError(
                    ErrorKind.PROCESS_FAILED,
                    process_failed_message(returncode, stderr),
                    exit_code=returncode,
                    stderr=stderr,
                ),
            )

        # Case-sensitive match anywhere in the output
        kind = OutcomeKind.ALL_STORIES_COMPLETE if ALL_STORIES_COMPLETE in text else OutcomeKind.ITERATION_COMPLETE
        return AgentOutcome(
            kind=kind,
            text=text,
            reply=reply,
            usage=usage,
            work_summary=extract_work_summary(text),
        )
