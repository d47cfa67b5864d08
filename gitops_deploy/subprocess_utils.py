from __future__ import annotations

import os
import queue
import subprocess
import sys
import threading
import time
from dataclasses import dataclass
from textwrap import shorten
from typing import Callable, Mapping, Sequence

from .logging_utils import get_logger, redact


logger = get_logger(__name__)


# -----------------------------
# CLI progress indicator config
# -----------------------------
@dataclass
class ProgressSettings:
    show: bool = True
    idle_seconds: float = 2.0
    style: str = "braille"  # braille | ascii
    interval: float = 0.12


_progress_lock = threading.Lock()
_progress_defaults = ProgressSettings()


def configure_cli_progress(
    *,
    show_progress: bool | None = None,
    idle_seconds: float | None = None,
    style: str | None = None,
    interval: float | None = None,
) -> None:
    """
    전역 CLI 진행 표시 설정.

    CLI 엔트리포인트에서 DeployConfig 값을 한 번 반영하기 위해 사용한다.
    """
    with _progress_lock:
        if show_progress is not None:
            _progress_defaults.show = bool(show_progress)
        if idle_seconds is not None:
            _progress_defaults.idle_seconds = float(idle_seconds)
        if style is not None:
            _progress_defaults.style = str(style)
        if interval is not None:
            _progress_defaults.interval = float(interval)


def _env_bool(name: str) -> bool | None:
    raw = os.getenv(name)
    if raw is None:
        return None
    return raw.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env_float(name: str) -> float | None:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return None
    try:
        return float(raw)
    except ValueError:
        return None


def _first(*values):  # noqa: ANN001, ANN202
    for v in values:
        if v is not None:
            return v
    return None


def _effective_progress(
    show: bool | None,
    idle_seconds: float | None,
    style: str | None,
    interval: float | None,
) -> ProgressSettings:
    # 우선순위: 호출 인자 > env > 전역 기본값
    with _progress_lock:
        defaults = ProgressSettings(**vars(_progress_defaults))
    return ProgressSettings(
        show=bool(_first(show, _env_bool("CLI_SHOW_PROGRESS"), defaults.show)),
        idle_seconds=float(_first(idle_seconds, _env_float("CLI_PROGRESS_IDLE_SECONDS"), defaults.idle_seconds)),
        style=str(_first(style, os.getenv("CLI_PROGRESS_STYLE"), defaults.style)),
        interval=float(_first(interval, _env_float("CLI_PROGRESS_INTERVAL_SECONDS"), defaults.interval)),
    )


_BRAILLE_FRAMES = ["⠋", "⠙", "⠹", "⠸", "⠼", "⠴", "⠦", "⠧", "⠇", "⠏"]
_ASCII_FRAMES = ["|", "/", "-", "\\"]


def _is_tty(stream) -> bool:  # noqa: ANN001
    try:
        return bool(stream.isatty())
    except (AttributeError, ValueError):
        return False


def _format_elapsed(seconds: float) -> str:
    if seconds < 60:
        return f"{seconds:0.1f}s"
    minutes = int(seconds // 60)
    return f"{minutes}m{int(seconds % 60):02d}s"


class IdleProgress:
    """
    명령이 일정 시간 이상 아무 출력도 하지 않을 때만 stderr 에
    스피너 + 메시지 + 경과시간 한 줄을 그린다.
    """

    def __init__(self, message: str, settings: ProgressSettings, *, stream=None) -> None:  # noqa: ANN001
        self._message = message
        self._stream = stream if stream is not None else sys.stderr
        self._frames = _ASCII_FRAMES if settings.style.strip().lower() == "ascii" else _BRAILLE_FRAMES
        self._interval = max(settings.interval, 0.02)
        self._idle_seconds = max(settings.idle_seconds, 0.0)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started = time.monotonic()
        self._last_activity = self._started
        self._activity_lock = threading.Lock()
        self._width = 0

    def touch(self) -> None:
        with self._activity_lock:
            self._last_activity = time.monotonic()
        self.clear()

    def _idle_for(self, now: float) -> float:
        with self._activity_lock:
            return now - self._last_activity

    def _loop(self) -> None:
        idx = 0
        while not self._stop.is_set():
            now = time.monotonic()
            idle = self._idle_for(now)
            if idle < self._idle_seconds:
                self._stop.wait(min(self._interval, max(self._idle_seconds - idle, 0.02)))
                continue
            frame = self._frames[idx % len(self._frames)]
            text = f"{frame} {self._message}  {_format_elapsed(now - self._started)}"
            self._width = max(self._width, len(text))
            self._stream.write("\r" + text)
            self._stream.flush()
            idx += 1
            self._stop.wait(self._interval)

    def start(self) -> "IdleProgress":
        if self._thread is None:
            self._thread = threading.Thread(target=self._loop, daemon=True)
            self._thread.start()
        return self

    def clear(self) -> None:
        if self._width <= 0:
            return
        self._stream.write("\r" + (" " * self._width) + "\r")
        self._stream.flush()
        self._width = 0

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=1.0)
        self.clear()


@dataclass(frozen=True)
class RunResult:
    returncode: int
    stdout: str
    stderr: str


class CommandError(RuntimeError):
    """외부 명령이 실패(미설치/타임아웃/exit != 0)했을 때."""

    def __init__(
        self,
        cmd: Sequence[str],
        *,
        returncode: int | None = None,
        stdout: str = "",
        stderr: str = "",
        reason: str = "failed",
    ) -> None:
        self.cmd = list(cmd)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        self.reason = reason  # failed | not_found | timeout
        super().__init__(self._render())

    def _render(self) -> str:
        cmd_text = redact(" ".join(self.cmd))
        if self.reason == "not_found":
            return f"필요한 명령을 찾을 수 없습니다: {self.cmd[0]} (설치되어 있는지 확인하세요)"
        if self.reason == "timeout":
            return f"명령 실행이 제한 시간 안에 끝나지 않았습니다: {cmd_text}"
        detail = ""
        if self.stderr.strip():
            detail = "\nstderr:\n" + shorten(redact(self.stderr.strip()), width=2000)
        elif self.stdout.strip():
            detail = "\nstdout:\n" + shorten(redact(self.stdout.strip()), width=2000)
        return f"명령 실행 실패: {cmd_text} (exit={self.returncode}){detail}"

    @property
    def output(self) -> str:
        return f"{self.stdout}\n{self.stderr}"


Runner = Callable[..., RunResult]


def run_command(
    cmd: Sequence[str],
    *,
    cwd: str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float | None = 900.0,
    stream_output: bool = False,
    spinner_message: str | None = None,
    show_progress: bool | None = None,
    progress_idle_seconds: float | None = None,
    progress_style: str | None = None,
    progress_interval: float | None = None,
) -> RunResult:
    """
    subprocess 실행 공통 유틸.

    - stream_output=False: stdout/stderr 캡처, 실패 시 요약을 CommandError 에 포함
    - stream_output=True : stdout/stderr 를 합쳐 실시간으로 터미널에 흘린다(docker build 등)

    실패 시 항상 CommandError 를 던진다. 호출 측에서 도메인 예외로 감싼다.
    """
    logger.info("명령 실행: %s", redact(" ".join(cmd)))

    settings = _effective_progress(show_progress, progress_idle_seconds, progress_style, progress_interval)
    message = spinner_message or shorten(redact(" ".join(cmd)), width=72, placeholder="…")
    progress: IdleProgress | None = None
    if settings.show and _is_tty(sys.stderr):
        progress = IdleProgress(message, settings, stream=sys.stderr).start()

    env_dict = dict(env) if env is not None else None
    try:
        if stream_output:
            return _run_streaming(cmd, cwd=cwd, env=env_dict, timeout=timeout, progress=progress)
        return _run_captured(cmd, cwd=cwd, env=env_dict, timeout=timeout)
    finally:
        if progress is not None:
            progress.stop()


def _run_captured(
    cmd: Sequence[str],
    *,
    cwd: str | None,
    env: dict[str, str] | None,
    timeout: float | None,
) -> RunResult:
    try:
        result = subprocess.run(  # noqa: S603
            list(cmd),
            check=False,
            capture_output=True,
            text=True,
            timeout=timeout,
            cwd=cwd,
            env=env,
        )
    except FileNotFoundError as e:
        raise CommandError(cmd, reason="not_found") from e
    except subprocess.TimeoutExpired as e:
        raise CommandError(cmd, reason="timeout") from e

    stdout = result.stdout or ""
    stderr = result.stderr or ""
    if stdout:
        logger.debug("명령 stdout: %s", shorten(stdout.strip(), width=2000))
    if stderr:
        logger.debug("명령 stderr: %s", shorten(stderr.strip(), width=2000))
    if result.returncode != 0:
        raise CommandError(cmd, returncode=result.returncode, stdout=stdout, stderr=stderr)
    return RunResult(returncode=result.returncode, stdout=stdout, stderr=stderr)


def _run_streaming(
    cmd: Sequence[str],
    *,
    cwd: str | None,
    env: dict[str, str] | None,
    timeout: float | None,
    progress: IdleProgress | None,
) -> RunResult:
    # docker/gcloud 는 stderr 로도 진행 로그를 내보내므로 STDOUT 으로 합친다.
    try:
        proc = subprocess.Popen(  # noqa: S603
            list(cmd),
            cwd=cwd,
            env=env,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
        )
    except FileNotFoundError as e:
        raise CommandError(cmd, reason="not_found") from e

    lines: queue.Queue[str | None] = queue.Queue()

    def _reader() -> None:
        try:
            assert proc.stdout is not None
            for line in proc.stdout:
                lines.put(line)
        finally:
            lines.put(None)

    reader = threading.Thread(target=_reader, daemon=True)
    reader.start()

    out: list[str] = []
    deadline = None if timeout is None else time.monotonic() + float(timeout)
    try:
        while True:
            if deadline is not None and time.monotonic() >= deadline:
                proc.kill()
                raise CommandError(cmd, stdout="".join(out), reason="timeout")
            try:
                item = lines.get(timeout=0.1)
            except queue.Empty:
                continue
            if item is None:
                break
            if progress is not None:
                progress.touch()
            out.append(item)
            sys.stdout.write(item)
            sys.stdout.flush()

        reader.join(timeout=1.0)
        remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
        returncode = proc.wait(timeout=remaining)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        raise CommandError(cmd, stdout="".join(out), reason="timeout") from e
    finally:
        if proc.stdout is not None:
            proc.stdout.close()

    combined = "".join(out)
    if returncode != 0:
        raise CommandError(cmd, returncode=returncode, stdout=combined)
    return RunResult(returncode=returncode, stdout=combined, stderr="")
