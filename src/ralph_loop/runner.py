"""Agent process runner for ralph-loop.

Builds the agent CLI command line and runs it as an asyncio subprocess,
streaming stdout/stderr chunks to callbacks while buffering them.
"""

import asyncio
import codecs
import contextlib
import os
import shlex
import shutil
import time
from uuid import uuid4

from .config import ERROR_PATTERNS
from .contracts import (
    AgentAdapter,
    AgentDetectResult,
    AgentExecuteOptions,
    AgentExecutionHandle,
    AgentResult,
    AgentStatus,
)
from .logging import get_logger

logger = get_logger("runner")

# Seconds between SIGTERM and SIGKILL after an interrupt
INTERRUPT_GRACE_SECONDS = 5.0
READ_CHUNK_SIZE = 4096


def check_error_patterns(output: str) -> str | None:
    """Check output for API error patterns. Returns matched pattern or None."""
    output_lower = output.lower()
    for pattern in ERROR_PATTERNS:
        if pattern.lower() in output_lower:
            return pattern
    return None


def build_cli_command(
    cmd: str,
    prompt: str,
    template: str = "",
    skip_permissions: bool = False,
    flags: list[str] | None = None,
) -> list[str]:
    """Build CLI command from template or auto-detect based on command name.

    Args:
        cmd: CLI command name (e.g., "claude", "codex")
        prompt: The prompt text
        template: Command template with placeholders (optional)
        skip_permissions: Add --dangerously-skip-permissions for Claude
        flags: Extra flags appended to the command (e.g. ["--model", "opus"])

    Returns:
        List of command arguments ready for subprocess.

    Template placeholders:
        {cmd} - CLI command
        {prompt} - Prompt text (shell-escaped)
        {flags} - Extra flags (shell-escaped, space separated)
    """
    flags = flags or []

    if template:
        formatted = template.format(
            cmd=cmd,
            prompt=shlex.quote(prompt),
            flags=" ".join(shlex.quote(f) for f in flags),
        )
        return shlex.split(formatted)

    if "codex" in cmd.lower():
        return [cmd, "exec", prompt, *flags]

    # Claude CLI (default)
    result = [cmd, "-p", prompt]
    if skip_permissions:
        result.append("--dangerously-skip-permissions")
    result.extend(flags)
    return result


def _with_file_context(prompt: str, files: list[str] | None) -> str:
    if not files:
        return prompt
    listing = "\n".join(f"- {path}" for path in files)
    return f"{prompt}\n\nRelevant files:\n{listing}\n"


class SubprocessExecution(AgentExecutionHandle):
    """One agent process started by SubprocessAgent."""

    def __init__(self, cmd: list[str], options: AgentExecuteOptions):
        self.execution_id = uuid4().hex[:12]
        self.cmd = cmd
        self.options = options
        self._process: asyncio.subprocess.Process | None = None
        self._interrupted = False
        self._task: asyncio.Task[AgentResult] = asyncio.get_running_loop().create_task(
            self._run()
        )

    async def wait(self) -> AgentResult:
        return await asyncio.shield(self._task)

    def is_running(self) -> bool:
        return not self._task.done()

    def interrupt(self) -> None:
        if self._interrupted or self._task.done():
            return
        self._interrupted = True
        logger.info("Interrupting agent", execution_id=self.execution_id)
        self._terminate()

    def _terminate(self) -> None:
        proc = self._process
        if proc is None or proc.returncode is not None:
            return
        with contextlib.suppress(ProcessLookupError):
            proc.terminate()
        asyncio.get_running_loop().call_later(INTERRUPT_GRACE_SECONDS, self._kill)

    def _kill(self) -> None:
        proc = self._process
        if proc is not None and proc.returncode is None:
            with contextlib.suppress(ProcessLookupError):
                proc.kill()

    async def _run(self) -> AgentResult:
        start = time.monotonic()
        stdout_parts: list[str] = []
        stderr_parts: list[str] = []

        def elapsed_ms() -> int:
            return int((time.monotonic() - start) * 1000)

        env = {**os.environ, **self.options.env} if self.options.env else None
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self.options.cwd,
                env=env,
            )
        except OSError as e:
            logger.error("Failed to start agent", command=self.cmd[0], error=str(e))
            return AgentResult(
                status=AgentStatus.FAILED,
                stdout="",
                stderr="",
                duration_ms=elapsed_ms(),
                interrupted=self._interrupted,
                error=f"Failed to start agent: {e}",
            )

        proc = self._process
        if self._interrupted:
            # interrupt() arrived before the process existed
            self._terminate()

        timed_out = False
        try:
            await asyncio.wait_for(
                self._communicate(proc, stdout_parts, stderr_parts),
                timeout=self.options.timeout,
            )
        except TimeoutError:
            timed_out = True
            self._kill()
            await proc.wait()

        stdout = "".join(stdout_parts)
        stderr = "".join(stderr_parts)
        returncode = proc.returncode

        error: str | None = None
        if timed_out:
            error = f"Timeout after {self.options.timeout:.0f}s"
        elif self._interrupted:
            error = "Interrupted"
        elif returncode != 0:
            error = f"Agent exited with code {returncode}"
        else:
            pattern = check_error_patterns(stdout + "\n" + stderr)
            if pattern:
                logger.warning("API error detected", error_pattern=pattern)
                error = f"API error: {pattern}"

        return AgentResult(
            status=AgentStatus.FAILED if error else AgentStatus.COMPLETED,
            stdout=stdout,
            stderr=stderr,
            duration_ms=elapsed_ms(),
            exit_code=returncode,
            interrupted=self._interrupted,
            error=error,
        )

    async def _communicate(
        self,
        proc: asyncio.subprocess.Process,
        stdout_parts: list[str],
        stderr_parts: list[str],
    ) -> None:
        await asyncio.gather(
            _pump(proc.stdout, stdout_parts, self.options.on_stdout),
            _pump(proc.stderr, stderr_parts, self.options.on_stderr),
        )
        await proc.wait()


async def _pump(stream, parts: list[str], callback) -> None:
    """Read a pipe to EOF, decoding incrementally and forwarding each chunk."""
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    while True:
        data = await stream.read(READ_CHUNK_SIZE)
        text = decoder.decode(data, final=not data)
        if text:
            parts.append(text)
            if callback is not None:
                callback(text)
        if not data:
            return


class SubprocessAgent(AgentAdapter):
    """Runs a coding-agent CLI (claude, codex, or a templated command)."""

    def __init__(
        self,
        command: str = "claude",
        template: str = "",
        skip_permissions: bool = True,
    ):
        self.command = command
        self.template = template
        self.skip_permissions = skip_permissions
        self.name = os.path.basename(command)

    async def detect(self) -> AgentDetectResult:
        path = shutil.which(self.command)
        if path is None:
            return AgentDetectResult(
                available=False, error=f"'{self.command}' not found on PATH"
            )
        return AgentDetectResult(available=True, version=path)

    def execute(
        self,
        prompt: str,
        files: list[str] | None = None,
        options: AgentExecuteOptions | None = None,
    ) -> SubprocessExecution:
        options = options or AgentExecuteOptions(cwd=os.getcwd())
        cmd = build_cli_command(
            cmd=self.command,
            prompt=_with_file_context(prompt, files),
            template=self.template,
            skip_permissions=self.skip_permissions,
            flags=options.flags,
        )
        logger.info(
            "Running agent command",
            command=self.command,
            cwd=options.cwd,
            skip_permissions=self.skip_permissions,
        )
        return SubprocessExecution(cmd, options)
