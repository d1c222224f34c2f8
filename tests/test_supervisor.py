"""Tests for worker process spawning and output relay."""

import asyncio
import sys

import pytest

from kanban_orchestrator.core.errors import SpawnFailure
from kanban_orchestrator.core.supervisor import _relay, pump, spawn


def python(code: str) -> list[str]:
    return [sys.executable, "-c", code]


async def collect(handle):
    out, err = [], []
    code = await pump(handle, out.append, err.append)
    return code, "".join(out), "".join(err)


class TestSpawn:
    def test_relays_both_streams_and_exit_code(self):
        async def scenario():
            handle = await spawn(python(
                "import sys; print('out'); print('err', file=sys.stderr); sys.exit(4)"
            ))
            return await collect(handle)

        code, out, err = asyncio.run(scenario())
        assert code == 4
        assert out == "out\n"
        assert err == "err\n"

    def test_cwd_and_env_overlay(self, tmp_path, monkeypatch):
        monkeypatch.setenv("KO_TEST_INHERITED", "yes")

        async def scenario():
            handle = await spawn(
                python("import os; print(os.getcwd()); print(os.environ['KO_TEST_INHERITED'], os.environ['EXTRA'])"),
                cwd=tmp_path,
                env={"EXTRA": "1"},
            )
            return await collect(handle)

        code, out, _ = asyncio.run(scenario())
        assert code == 0
        assert out.splitlines() == [str(tmp_path), "yes 1"]

    def test_missing_executable(self, tmp_path):
        missing = str(tmp_path / "no-such-worker")
        with pytest.raises(SpawnFailure, match="Could not launch") as excinfo:
            asyncio.run(spawn([missing, "--flag"]))
        assert excinfo.value.command == [missing, "--flag"]

    def test_missing_executable_on_pty(self, tmp_path):
        with pytest.raises(SpawnFailure):
            asyncio.run(spawn([str(tmp_path / "no-such-worker")], use_pty=True))

    def test_write_to_stdin(self):
        async def scenario():
            handle = await spawn(python("import sys; print(sys.stdin.readline().upper(), end='')"))
            await handle.write("hello\n")
            return await collect(handle)

        code, out, _ = asyncio.run(scenario())
        assert code == 0
        assert out == "HELLO\n"

    def test_kill_is_idempotent(self):
        async def scenario():
            handle = await spawn(python("import time; time.sleep(30)"))
            handle.kill()
            code = await handle.wait()
            handle.kill()
            return code

        assert asyncio.run(scenario()) < 0

    def test_pump_returns_after_kill(self):
        async def scenario():
            handle = await spawn(python("import time; print('up', flush=True); time.sleep(30)"))
            chunks = []

            def on_stdout(chunk):
                chunks.append(chunk)
                handle.kill()

            code = await asyncio.wait_for(pump(handle, on_stdout), timeout=10)
            return code, chunks

        code, chunks = asyncio.run(scenario())
        assert code < 0
        assert chunks == ["up\n"]


class TestPseudoTerminal:
    def test_streams_are_merged_on_a_terminal(self):
        async def scenario():
            handle = await spawn(
                python(
                    "import os, sys; print(os.environ['TERM'], sys.stdout.isatty()); "
                    "print('err', file=sys.stderr)"
                ),
                use_pty=True,
            )
            assert handle.uses_pty
            assert handle.stderr is None
            try:
                return await collect(handle)
            finally:
                handle.close()

        code, out, err = asyncio.run(scenario())
        assert code == 0
        assert "xterm-256color True" in out
        assert "err" in out
        assert err == ""

    def test_input_reaches_terminal_process(self):
        async def scenario():
            handle = await spawn(python("print('got', input())"), use_pty=True)
            try:
                await handle.write("ping\n")
                return await collect(handle)
            finally:
                handle.close()

        code, out, _ = asyncio.run(scenario())
        assert code == 0
        assert "got ping" in out

    def test_resize_is_ignored_without_terminal(self):
        async def scenario():
            handle = await spawn(python("pass"))
            handle.resize(80, 24)
            return await handle.wait()

        assert asyncio.run(scenario()) == 0


class TestRelay:
    def test_multibyte_character_split_across_reads(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data("é".encode()[:1])
            reader.feed_data("é".encode()[1:] + b"\n")
            reader.feed_eof()
            chunks = []
            await _relay(reader, chunks.append)
            return "".join(chunks)

        assert asyncio.run(scenario()) == "é\n"

    def test_invalid_bytes_are_replaced(self):
        async def scenario():
            reader = asyncio.StreamReader()
            reader.feed_data(b"ok\xff\n")
            reader.feed_eof()
            chunks = []
            await _relay(reader, chunks.append)
            return "".join(chunks)

        assert asyncio.run(scenario()) == "ok�\n"
