"""Subprocess-based backend runner for CLI agents."""

from __future__ import annotations

import os
import shlex
import subprocess
import time
from pathlib import Path

from loopwork.processes.tracker import ProcessTracker
from loopwork.runner.backend.base import AgentRunRequest, AgentRunResult

TIMEOUT_EXIT_CODE = 124
POLL_INTERVAL_SECONDS = 0.1


class AgentRunError(RuntimeError):
    """Agent execution error with retryability hint."""

    def __init__(self, message: str, *, transient: bool) -> None:
        super().__init__(message)
        self.transient = transient


class CliAgentBackend:
    """Execute the configured command template and track the child PID while it runs."""

    def __init__(self, tracker: ProcessTracker | None = None) -> None:
        self.tracker = tracker

    def run(self, request: AgentRunRequest) -> AgentRunResult:
        request.output_dir.mkdir(parents=True, exist_ok=True)
        stdout_path = request.output_dir / "stdout.log"
        stderr_path = request.output_dir / "stderr.log"
        prompt_file = request.output_dir / "prompt.md"
        prompt_file.write_text(request.prompt, "utf-8")

        run_args = _build_run_args(
            command_template=request.command_template,
            prompt=request.prompt,
            prompt_file=prompt_file,
            task_id=request.task_id,
            model=request.model,
        )

        env = os.environ.copy()
        env["LOOPWORK_TASK_ID"] = request.task_id
        env["LOOPWORK_PROMPT_FILE"] = str(prompt_file)
        env["LOOPWORK_AGENT_MODEL"] = request.model

        try:
            with (
                stdout_path.open("w", encoding="utf-8") as stdout_handle,
                stderr_path.open("w", encoding="utf-8") as stderr_handle,
            ):
                process = subprocess.Popen(  # noqa: S603
                    run_args,
                    cwd=request.workdir,
                    env=env,
                    stdout=stdout_handle,
                    stderr=stderr_handle,
                    text=True,
                )
                command = shlex.join(run_args)
                if self.tracker is None:
                    return _wait_with_shutdown(process, request, stdout_path, stderr_path)
                with self.tracker.tracking(process.pid, command, request.workdir):
                    return _wait_with_shutdown(process, request, stdout_path, stderr_path)
        except FileNotFoundError as error:
            raise AgentRunError(
                f"Agent command not found: {run_args[0]}",
                transient=False,
            ) from error
        except OSError as error:
            raise AgentRunError(f"Agent failed to start: {error}", transient=True) from error


def _build_run_args(
    *,
    command_template: str,
    prompt: str,
    prompt_file: Path,
    task_id: str,
    model: str,
) -> list[str]:
    stripped = command_template.strip()
    if not stripped:
        raise AgentRunError("Agent command template is empty.", transient=False)
    if "{prompt}" not in stripped and "{prompt_file}" not in stripped:
        raise AgentRunError(
            "Agent command template must include {prompt} or {prompt_file}.",
            transient=False,
        )

    try:
        rendered = stripped.format(
            prompt=shlex.quote(prompt),
            prompt_file=shlex.quote(str(prompt_file)),
            task_id=shlex.quote(task_id),
            model=shlex.quote(model),
        )
    except (KeyError, IndexError) as error:
        raise AgentRunError(
            f"Unsupported command template placeholder: {error}",
            transient=False,
        ) from error

    argv = shlex.split(rendered)
    if not argv:
        raise AgentRunError("Agent command template rendered empty command.", transient=False)
    return argv


def _wait_with_shutdown(
    process: subprocess.Popen[str],
    request: AgentRunRequest,
    stdout_path: Path,
    stderr_path: Path,
) -> AgentRunResult:
    started = time.monotonic()
    shutdown_deadline: float | None = None
    graceful_seconds = max(0, request.graceful_shutdown_seconds or 0)

    def result(exit_code: int, *, timed_out: bool) -> AgentRunResult:
        return AgentRunResult(
            exit_code=exit_code,
            timed_out=timed_out,
            stdout_path=stdout_path,
            stderr_path=stderr_path,
            pid=process.pid,
        )

    while True:
        returncode = process.poll()
        if returncode is not None:
            return result(returncode, timed_out=False)

        now = time.monotonic()
        if now - started >= request.timeout_seconds:
            _terminate_process(process)
            return result(TIMEOUT_EXIT_CODE, timed_out=True)

        if request.shutdown_requested is not None and request.shutdown_requested():
            if shutdown_deadline is None:
                shutdown_deadline = now + graceful_seconds
            if now >= shutdown_deadline:
                _terminate_process(process)
                return result(TIMEOUT_EXIT_CODE, timed_out=True)

        time.sleep(POLL_INTERVAL_SECONDS)


def _terminate_process(process: subprocess.Popen[str]) -> None:
    try:
        process.terminate()
    except OSError:
        return
    try:
        process.wait(timeout=2)
    except subprocess.TimeoutExpired:
        try:
            process.kill()
        except OSError:
            return
        process.wait(timeout=2)


def read_tail(path: Path, limit: int = 2_000) -> str:
    """Return the last ``limit`` characters of a log file, or an empty string."""

    try:
        with path.open("rb") as handle:
            handle.seek(0, os.SEEK_END)
            handle.seek(max(0, handle.tell() - limit * 4))
            content = handle.read().decode("utf-8", errors="replace")
    except OSError:
        return ""
    return content[-limit:]

