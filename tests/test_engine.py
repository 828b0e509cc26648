"""Tests for fleetkeys/engine.py - transport fallback and fleet driver."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

import pytest
from fleetkeys.engine import ProvisioningEngine, describe_failed_run, provision_fleet
from fleetkeys.exceptions import (
    KeyGenerationError,
    KeyMaterialError,
    TransportExecutionFailure,
    VerificationFailure,
)
from fleetkeys.keys import KeyPair
from fleetkeys.transports import TRANSPORT_PRIORITY, TransportCapability
from fleetkeys.types import CommandOutcome, HostTarget, RunResult

SSHPASS = TransportCapability.PASSWORD_INJECTION
PEXPECT = TransportCapability.INTERACTIVE_HANDSHAKE
PLINK = TransportCapability.STDIN_INJECTION
UPLOAD = TransportCapability.UPLOAD_AND_EXECUTE


def ok_run(_host, commands) -> RunResult:
    return RunResult(succeeded=True, outcomes=[CommandOutcome(c, 0) for c in commands])


def failed_run(_host, commands) -> RunResult:
    outcomes = [CommandOutcome(c, 0) for c in commands]
    outcomes[1] = CommandOutcome(commands[1], 1)
    return RunResult(succeeded=False, outcomes=outcomes)


class FakeRunners:
    """Runner factory whose behaviour is scripted per transport."""

    def __init__(self, behaviour):
        self.behaviour = behaviour
        self.calls: list[tuple[TransportCapability, str]] = []

    def __call__(self, capability, settings):
        runner = MagicMock()

        def run_commands(host, commands):
            self.calls.append((capability, host.hostname))
            action = self.behaviour[capability]
            if isinstance(action, Exception):
                raise action
            return action(host, commands)

        runner.run_commands.side_effect = run_commands
        return runner


def make_engine(settings, runners, *, transports=TRANSPORT_PRIORITY, verify=True):
    selector = MagicMock()
    selector.available_transports.return_value = list(transports)
    trust_store = MagicMock()
    trust_store.prime_host.return_value = True
    sleep = MagicMock()
    engine = ProvisioningEngine(
        selector=selector,
        trust_store=trust_store,
        settings=settings,
        keys_dir="/etc/ssh/keys-root",
        settle_s=2.0,
        verify=verify,
        runner_factory=runners,
        sleep=sleep,
    )
    return engine


class TestDescribeFailedRun:
    """Tests for describe_failed_run function."""

    def test_lists_failed_commands(self):
        run = failed_run(None, ["a", "b", "c"])
        assert describe_failed_run(run) == "'b' exited 1"

    def test_no_outcomes(self):
        assert describe_failed_run(RunResult(succeeded=False, outcomes=[])) == "no commands ran"


class TestProvisioningEngine:
    """Tests for ProvisioningEngine.provision."""

    def test_first_transport_succeeds(self, host, key_pair, settings, mocker):
        mock_verify = mocker.patch("fleetkeys.engine.verify_key_login")
        runners = FakeRunners({SSHPASS: ok_run})
        engine = make_engine(settings, runners)

        result = engine.provision(host, key_pair)

        assert result.succeeded is True
        assert result.transport_used == SSHPASS
        assert result.verified is True
        assert result.error is None
        assert runners.calls == [(SSHPASS, host.hostname)]
        engine.sleep.assert_called_once_with(2.0)
        mock_verify.assert_called_once()

    def test_trust_primed_before_runners(self, host, key_pair, settings, mocker):
        mocker.patch("fleetkeys.engine.verify_key_login")
        order: list[str] = []
        runners = FakeRunners({SSHPASS: lambda h, c: order.append("run") or ok_run(h, c)})
        engine = make_engine(settings, runners)
        engine.trust_store.prime_host.side_effect = lambda hostname: order.append("prime")

        engine.provision(host, key_pair)

        assert order == ["prime", "run"]
        engine.trust_store.prime_host.assert_called_once_with(host.hostname)

    def test_priming_failure_does_not_stop_attempts(self, host, key_pair, settings, mocker):
        mocker.patch("fleetkeys.engine.verify_key_login")
        runners = FakeRunners({SSHPASS: ok_run})
        engine = make_engine(settings, runners)
        engine.trust_store.prime_host.return_value = False

        assert engine.provision(host, key_pair).succeeded is True

    def test_falls_back_on_failed_commands(self, host, key_pair, settings, mocker):
        """A transport whose commands fail hands over to the next one."""
        mocker.patch("fleetkeys.engine.verify_key_login")
        runners = FakeRunners({SSHPASS: failed_run, PEXPECT: ok_run})
        engine = make_engine(settings, runners)

        result = engine.provision(host, key_pair)

        assert result.transport_used == PEXPECT
        assert [a["transport"] for a in result.attempts] == ["sshpass", "pexpect"]
        assert result.attempts[0]["ok"] is False
        assert "exited 1" in result.attempts[0]["error"]

    def test_falls_back_on_exception(self, host, key_pair, settings, mocker):
        mocker.patch("fleetkeys.engine.verify_key_login")
        runners = FakeRunners(
            {
                SSHPASS: TransportExecutionFailure("sshpass", "password rejected"),
                PEXPECT: RuntimeError("pty exploded"),
                PLINK: ok_run,
            }
        )
        engine = make_engine(settings, runners)

        result = engine.provision(host, key_pair)

        assert result.succeeded is True
        assert result.transport_used == PLINK
        assert [c[0] for c in runners.calls] == [SSHPASS, PEXPECT, PLINK]

    def test_all_fail(self, host, key_pair, settings, mocker):
        mock_verify = mocker.patch("fleetkeys.engine.verify_key_login")
        runners = FakeRunners(
            {
                SSHPASS: failed_run,
                PEXPECT: failed_run,
                PLINK: TransportExecutionFailure("plink", "timed out"),
                UPLOAD: failed_run,
            }
        )
        engine = make_engine(settings, runners)

        result = engine.provision(host, key_pair)

        assert result.succeeded is False
        assert result.transport_used is None
        assert result.verified is False
        assert result.error == "all 4 transport(s) failed"
        assert len(result.attempts) == 4
        mock_verify.assert_not_called()
        engine.sleep.assert_not_called()

    def test_no_transports(self, host, key_pair, settings, mocker):
        runners = FakeRunners({})
        engine = make_engine(settings, runners, transports=[])

        result = engine.provision(host, key_pair)

        assert result.succeeded is False
        assert result.error == "no transports available"
        assert runners.calls == []

    def test_only_available_transports_tried(self, host, key_pair, settings, mocker):
        mocker.patch("fleetkeys.engine.verify_key_login")
        runners = FakeRunners({UPLOAD: failed_run})
        engine = make_engine(settings, runners, transports=[UPLOAD])

        result = engine.provision(host, key_pair)

        assert runners.calls == [(UPLOAD, host.hostname)]
        assert result.error == "all 1 transport(s) failed"

    def test_password_redacted_from_attempts(self, host, key_pair, settings, mocker):
        runners = FakeRunners(
            {t: TransportExecutionFailure(t.value, f"saw {host.password}") for t in TRANSPORT_PRIORITY}
        )
        engine = make_engine(settings, runners)

        result = engine.provision(host, key_pair)

        for attempt in result.attempts:
            assert host.password not in attempt["error"]

    def test_verification_failure_keeps_success(self, host, key_pair, settings, mocker):
        """Install success with failed verification is unverified, not failed."""
        mocker.patch(
            "fleetkeys.engine.verify_key_login",
            side_effect=VerificationFailure("esx1: key login failed (rc=255)"),
        )
        runners = FakeRunners({SSHPASS: ok_run})
        engine = make_engine(settings, runners)

        result = engine.provision(host, key_pair)

        assert result.succeeded is True
        assert result.verified is False

    def test_verify_disabled(self, host, key_pair, settings, mocker):
        mock_verify = mocker.patch("fleetkeys.engine.verify_key_login")
        engine = make_engine(settings, FakeRunners({SSHPASS: ok_run}), verify=False)

        result = engine.provision(host, key_pair)

        assert result.succeeded is True
        assert result.verified is False
        mock_verify.assert_not_called()
        engine.sleep.assert_not_called()

    def test_empty_public_key_raises(self, host, key_pair, settings):
        runners = FakeRunners({})
        engine = make_engine(settings, runners)
        empty = KeyPair(key_pair.private_key_path, key_pair.public_key_path, "")

        with pytest.raises(KeyMaterialError):
            engine.provision(host, empty)

        assert runners.calls == []

    def test_install_commands_use_keys_dir(self, key_pair, settings):
        engine = make_engine(settings, FakeRunners({}))
        commands = engine.install_commands(key_pair)
        assert commands[-1] == "chmod 700 /etc/ssh/keys-root"


class TestProvisionFleet:
    """Tests for provision_fleet function."""

    @pytest.fixture
    def hosts(self) -> list[HostTarget]:
        return [
            HostTarget(hostname="down.example.com", username="root", password="pw"),
            HostTarget(hostname="esx1.example.com", username="root", password="pw"),
        ]

    def test_unreachable_then_reachable(self, hosts, key_files, settings, mocker):
        """Every transport fails for the first host; the second uses the first one."""
        mocker.patch("fleetkeys.engine.verify_key_login")

        def transport(capability):
            def run(host, commands):
                if host.hostname.startswith("down"):
                    raise TransportExecutionFailure(capability.value, "connection failed")
                return ok_run(host, commands)

            return run

        runners = FakeRunners({t: transport(t) for t in TRANSPORT_PRIORITY})
        engine = make_engine(settings, runners)

        results = provision_fleet(hosts, engine=engine, key_path=key_files)

        assert [r.host for r in results] == ["down.example.com", "esx1.example.com"]
        assert results[0].succeeded is False
        assert results[0].transport_used is None
        assert [a["transport"] for a in results[0].attempts] == [t.value for t in TRANSPORT_PRIORITY]
        assert results[1].succeeded is True
        assert results[1].transport_used == SSHPASS
        assert runners.calls[-1] == (SSHPASS, "esx1.example.com")

    def test_unexpected_error_isolated(self, hosts, key_files, settings, mocker):
        mocker.patch("fleetkeys.engine.verify_key_login")
        engine = make_engine(settings, FakeRunners({SSHPASS: ok_run}), transports=[SSHPASS])
        engine.trust_store.prime_host.side_effect = [ValueError("disk on fire"), True]

        results = provision_fleet(hosts, engine=engine, key_path=key_files)

        assert results[0].succeeded is False
        assert results[0].error == "disk on fire"
        assert results[1].succeeded is True

    def test_on_result_called_per_host(self, hosts, key_files, settings, mocker):
        mocker.patch("fleetkeys.engine.verify_key_login")
        engine = make_engine(settings, FakeRunners({SSHPASS: ok_run}), transports=[SSHPASS])
        seen: list[str] = []

        provision_fleet(hosts, engine=engine, key_path=key_files, on_result=lambda r: seen.append(r.host))

        assert seen == ["down.example.com", "esx1.example.com"]

    def test_on_result_error_does_not_stop_fleet(self, hosts, key_files, settings, mocker, caplog):
        """A failing result callback (e.g. unwritable audit log) is logged and skipped."""
        mocker.patch("fleetkeys.engine.verify_key_login")
        runners = FakeRunners({SSHPASS: ok_run})
        engine = make_engine(settings, runners, transports=[SSHPASS])

        def on_result(result):
            raise IsADirectoryError("audit log is a directory")

        results = provision_fleet(hosts, engine=engine, key_path=key_files, on_result=on_result)

        assert [r.succeeded for r in results] == [True, True]
        assert len(runners.calls) == 2
        assert "audit log is a directory" in caplog.text

    def test_stop_event_cancels_remaining(self, hosts, key_files, settings, mocker):
        mocker.patch("fleetkeys.engine.verify_key_login")
        stop = threading.Event()
        runners = FakeRunners({SSHPASS: lambda h, c: stop.set() or ok_run(h, c)})
        engine = make_engine(settings, runners, transports=[SSHPASS])

        results = provision_fleet(hosts, engine=engine, key_path=key_files, stop_event=stop)

        assert results[0].succeeded is True
        assert results[1].error == "cancelled"
        assert len(runners.calls) == 1

    def test_key_generation_failure_raises(self, hosts, tmp_dir, settings, mocker):
        """Key material problems abort the run before any host is touched."""
        mocker.patch("fleetkeys.keys.subprocess.run", side_effect=FileNotFoundError())
        runners = FakeRunners({})
        engine = make_engine(settings, runners)

        with pytest.raises(KeyGenerationError):
            provision_fleet(hosts, engine=engine, key_path=tmp_dir / "id_rsa")

        assert runners.calls == []

    def test_empty_fleet(self, key_files, settings):
        engine = make_engine(settings, FakeRunners({}))
        assert provision_fleet([], engine=engine, key_path=key_files) == []
