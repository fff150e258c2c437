import asyncio

import pytest
from typer.testing import CliRunner

import probe
from aggregate import ProbeStatus
from probe import (
    IPFamily,
    ProbeTask,
    ProbeTaskError,
    ProbeUnavailableError,
    TaskStartupFailure,
    load_config,
    run_ping,
    validate_target,
)

PING_OK = (
    b'PING 192.0.2.1 (192.0.2.1) 56(84) bytes of data.\n'
    b'64 bytes from 192.0.2.1: icmp_seq=1 ttl=57 time=14.2 ms\n'
)


class FakeProcess:
    def __init__(self, returncode: int, stdout: bytes = b'', stderr: bytes = b'',
                 hang: bool = False) -> None:
        self.returncode = returncode
        self._stdout = stdout
        self._stderr = stderr
        self._hang = hang
        self.killed = False
        self.reaped = False

    async def communicate(self):
        # a hanging ping only finishes once it has been killed
        while self._hang and not self.killed:
            await asyncio.sleep(0.01)
        if self.killed:
            self.reaped = True
        return self._stdout, self._stderr

    def kill(self) -> None:
        self.killed = True


def _patch_exec(monkeypatch, processes: dict) -> list:
    calls = []

    async def fake_exec(*cmd, **kwargs):
        calls.append(cmd)
        proc = processes.get(cmd[0])
        if proc is None:
            raise FileNotFoundError(cmd[0])
        return proc

    monkeypatch.setattr(probe.asyncio, 'create_subprocess_exec', fake_exec)
    return calls


def test_run_ping_parses_rtt(monkeypatch) -> None:
    calls = _patch_exec(monkeypatch, {'ping': FakeProcess(0, PING_OK)})

    ok, rtt = asyncio.run(run_ping('192.0.2.1', 2, IPFamily.V4))

    assert ok is True
    assert rtt == 14.2
    assert calls[0] == ('ping', '-n', '-c', '1', '-w', '2', '192.0.2.1')


def test_run_ping_auto_falls_back_to_ping6(monkeypatch) -> None:
    calls = _patch_exec(
        monkeypatch,
        {'ping': FakeProcess(1), 'ping6': FakeProcess(0, b'time=0.9 ms')},
    )

    ok, rtt = asyncio.run(run_ping('2001:db8::1', 1, IPFamily.AUTO))

    assert (ok, rtt) == (True, 0.9)
    assert [c[0] for c in calls] == ['ping', 'ping6']


def test_run_ping_unreachable_is_plain_failure(monkeypatch) -> None:
    _patch_exec(monkeypatch, {'ping': FakeProcess(2, stderr=b'ping: unknown host nowhere')})

    assert asyncio.run(run_ping('nowhere', 1, IPFamily.V4)) == (False, None)


def test_run_ping_timeout_kills_process(monkeypatch) -> None:
    proc = FakeProcess(0, hang=True)
    _patch_exec(monkeypatch, {'ping': proc})

    # the subprocess gets timeout + 1 seconds before it is killed
    assert asyncio.run(run_ping('192.0.2.1', 0, IPFamily.V4)) == (False, None)
    assert proc.killed is True
    assert proc.reaped is True


def test_run_ping_cancelled_kills_and_reaps_process(monkeypatch) -> None:
    proc = FakeProcess(0, hang=True)
    _patch_exec(monkeypatch, {'ping': proc})

    async def scenario():
        running = asyncio.create_task(run_ping('192.0.2.1', 5, IPFamily.V4))
        await asyncio.sleep(0.05)
        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running

    asyncio.run(scenario())

    assert proc.killed is True
    assert proc.reaped is True


def test_run_ping_missing_binary_is_unavailable(monkeypatch) -> None:
    _patch_exec(monkeypatch, {})

    with pytest.raises(ProbeUnavailableError):
        asyncio.run(run_ping('192.0.2.1', 1, IPFamily.AUTO))


def test_run_ping_permission_denied_is_unavailable(monkeypatch) -> None:
    _patch_exec(
        monkeypatch,
        {'ping': FakeProcess(2, stderr=b'ping: socket: Operation not permitted\n')},
    )

    with pytest.raises(ProbeUnavailableError, match='Operation not permitted'):
        asyncio.run(run_ping('192.0.2.1', 1, IPFamily.V4))


@pytest.mark.parametrize(
    'name',
    ['192.0.2.1', '2001:db8::1', 'example.com', 'localhost', ' host-1 ', 'bücher.de', 'пример.рф'],
)
def test_validate_target_accepts_hosts_and_addresses(name) -> None:
    assert validate_target(name) == name.strip()


@pytest.mark.parametrize('name', ['', '   ', '-f', 'bad host', 'under..dots'])
def test_validate_target_rejects_invalid_names(name) -> None:
    with pytest.raises(TaskStartupFailure):
        validate_target(name)


def test_probe_task_count_mode_emits_sequenced_results() -> None:
    replies = iter([(True, 11.0), (False, None), (True, None)])

    async def pinger(host):
        return next(replies)

    async def scenario():
        task = ProbeTask('192.0.2.1', 3, pinger, pause_secs=0)
        sent = await task.run()
        items = []
        while not task.results.empty():
            items.append(task.results.get_nowait())
        return sent, items

    sent, items = asyncio.run(scenario())

    assert sent == 3
    assert [r.sequence for r in items] == [1, 2, 3]
    assert [r.status for r in items] == [ProbeStatus.SUCCESS, ProbeStatus.FAILURE, ProbeStatus.SUCCESS]
    assert items[0].latency_ms == 11.0
    # no RTT from the primitive: the measured duration is used instead
    assert items[2].latency_ms >= 0.0
    assert items[1].latency_ms == 0.0


def test_probe_task_continuous_mode_runs_until_cancelled() -> None:
    async def pinger(host):
        return True, 1.0

    async def scenario():
        task = ProbeTask('example.com', None, pinger, pause_secs=0.001)
        running = asyncio.create_task(task.run())
        await asyncio.sleep(0.05)
        assert not running.done()
        running.cancel()
        with pytest.raises(asyncio.CancelledError):
            await running
        return task

    task = asyncio.run(scenario())
    assert task.continuous is True
    assert task.sent >= 2


def test_probe_task_unavailable_at_start_is_startup_failure() -> None:
    async def pinger(host):
        raise ProbeUnavailableError('missing binaries: ping')

    task = ProbeTask('192.0.2.1', 4, pinger, pause_secs=0)
    with pytest.raises(TaskStartupFailure) as excinfo:
        asyncio.run(task.run())

    assert excinfo.value.target == '192.0.2.1'
    assert 'missing binaries' in excinfo.value.reason
    assert task.results.empty()


def test_probe_task_unavailable_later_is_task_error() -> None:
    calls = 0

    async def pinger(host):
        nonlocal calls
        calls += 1
        if calls > 1:
            raise ProbeUnavailableError('Operation not permitted')
        return True, 3.0

    task = ProbeTask('192.0.2.1', 4, pinger, pause_secs=0)
    with pytest.raises(ProbeTaskError) as excinfo:
        asyncio.run(task.run())

    assert not isinstance(excinfo.value, TaskStartupFailure)
    assert task.results.qsize() == 1


def test_probe_task_invalid_target_never_pings() -> None:
    called = False

    async def pinger(host):
        nonlocal called
        called = True
        return True, 1.0

    with pytest.raises(TaskStartupFailure):
        asyncio.run(ProbeTask('-rf', 2, pinger).run())
    assert called is False


def test_load_config_reads_targets_and_options(tmp_path) -> None:
    path = tmp_path / 'config.yaml'
    path.write_text(
        'targets:\n'
        '  - 192.0.2.1\n'
        '  - host: example.com\n'
        'count: 10\n'
        'interval_ms: 250\n'
        'family: v4\n'
        'pause_secs: 0.5\n',
        encoding='utf-8',
    )

    cfg = load_config(str(path))

    assert cfg.targets == ['192.0.2.1', 'example.com']
    assert cfg.count == 10
    assert cfg.interval_ms == 250
    assert cfg.family == 'v4'
    assert cfg.pause_secs == 0.5
    assert cfg.continuous is False
    assert cfg.timeout_secs == 2


def test_load_config_empty_file_uses_defaults(tmp_path) -> None:
    path = tmp_path / 'config.yaml'
    path.write_text('', encoding='utf-8')

    cfg = load_config(str(path))

    assert cfg.targets == []
    assert cfg.count == 4
    assert cfg.interval_ms == 1000


@pytest.mark.parametrize(
    'body, message',
    [
        ('targets: example.com\n', 'targets'),
        ('targets:\n  - name: x\n', 'host'),
        ('family: ipx\n', 'family'),
        ('count: 0\n', 'count'),
        ('interval_ms: -5\n', 'interval_ms'),
    ],
)
def test_load_config_rejects_invalid_values(tmp_path, body, message) -> None:
    path = tmp_path / 'config.yaml'
    path.write_text(body, encoding='utf-8')

    with pytest.raises(ValueError, match=message):
        load_config(str(path))


def test_check_command_reports_binaries(monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(probe.shutil, 'which', lambda name: f'/usr/bin/{name}')
    path = tmp_path / 'config.yaml'
    path.write_text('targets: [192.0.2.1]\ncontinuous: true\n', encoding='utf-8')

    result = CliRunner().invoke(probe.app, ['--config', str(path)])

    assert result.exit_code == 0
    assert 'ping present: yes' in result.output
    assert 'Targets: 1 | continuous' in result.output


def test_check_command_fails_without_ping(monkeypatch) -> None:
    monkeypatch.setattr(probe.shutil, 'which', lambda name: None)

    result = CliRunner().invoke(probe.app, [])

    assert result.exit_code == 1
    assert 'ping present: NO' in result.output
