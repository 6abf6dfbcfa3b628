"""
Tests for the mining agent: command processing, state transitions and
health-check remediation against mocked systemctl and a fake miner probe.
"""

import sqlite3
import threading
from unittest.mock import patch

import pytest

from conftest import FakeMinerApi, ProcessResponse, register_unit
from minerfleet.modules.api import CommandStatus, ProcessStatus
from minerfleet.modules.executor import MiningAgent, ServiceManager
from minerfleet.modules.executor.agent import SERVICE_FAILED, ZERO_HASHRATE
from minerfleet.modules.queue import CommandQueue


def make_agent(store, miner_api=None, hostname="rig-a", queue_hostname=None) -> MiningAgent:
    return MiningAgent(
        store=store,
        service=ServiceManager("xmrig"),
        miner_api=miner_api or FakeMinerApi(),
        hostname=hostname,
        queue_hostname=queue_hostname,
        poll_interval=0.01,
    )


class TestProcess:
    """Test executing individual commands."""

    @pytest.mark.parametrize(
        "action,final_status",
        [("start", ProcessStatus.RUNNING), ("stop", ProcessStatus.STOPPED), ("restart", ProcessStatus.RUNNING)],
    )
    def test_actions_complete(self, store, subprocess_mocker, action, final_status):
        register_unit(subprocess_mocker)
        agent = make_agent(store)
        command = CommandQueue(store).issue(action)

        agent.process(command)

        stored = store.get_command(command.id)
        assert stored.status == CommandStatus.COMPLETED
        assert stored.result == f"{action} xmrig: OK"
        assert subprocess_mocker.was_called_with(f"systemctl {action} xmrig")
        assert store.get_process_state("rig-a").status == final_status

    def test_start_records_pid_and_started_at(self, store, subprocess_mocker):
        register_unit(subprocess_mocker, pid=777)
        agent = make_agent(store)

        agent.process(CommandQueue(store).issue("start"))

        state = store.get_process_state("rig-a")
        assert state.pid == 777
        assert state.started_at is not None
        assert state.worker_id == "rig-a-production"

    def test_stop_clears_pid(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store)
        agent.process(CommandQueue(store).issue("start"))

        agent.process(CommandQueue(store).issue("stop"))

        state = store.get_process_state("rig-a")
        assert state.pid is None
        assert state.stopped_at is not None

    def test_unknown_action_fails_without_raising(self, store, subprocess_mocker):
        agent = make_agent(store)
        with store.transaction() as cursor:
            cursor.execute(
                "INSERT INTO commands (action, status, created_at, updated_at) "
                "VALUES ('reboot', 'pending', '2026-01-01T00:00:00+00:00', '2026-01-01T00:00:00+00:00')"
            )
        command = CommandQueue(store).next_pending()

        agent.process(command)

        stored = store.get_command(command.id)
        assert stored.status == CommandStatus.FAILED
        assert "reboot" in stored.error_message
        assert subprocess_mocker.call_count == 0

    def test_service_failure_marks_crashed(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        subprocess_mocker.register(
            "systemctl start ", ProcessResponse(stderr="Job for xmrig.service failed.", returncode=1), priority=1
        )
        agent = make_agent(store)
        command = CommandQueue(store).issue("start")

        agent.process(command)

        stored = store.get_command(command.id)
        assert stored.status == CommandStatus.FAILED
        assert stored.error_message == "Job for xmrig.service failed."
        state = store.get_process_state("rig-a")
        assert state.status == ProcessStatus.CRASHED
        assert state.error_count == 1

    def test_exception_is_recorded(self, store):
        agent = make_agent(store)
        command = CommandQueue(store).issue("restart")

        with patch.object(ServiceManager, "restart", side_effect=RuntimeError("dbus exploded")):
            agent.process(command)

        stored = store.get_command(command.id)
        assert stored.status == CommandStatus.FAILED
        assert stored.error_message == "dbus exploded"
        assert store.get_process_state("rig-a").last_error == "dbus exploded"

    def test_store_failure_does_not_raise(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store)
        command = CommandQueue(store).issue("start")

        with patch.object(CommandQueue, "complete", side_effect=RuntimeError("disk I/O error")):
            agent.process(command)


class TestPoll:
    """Test the poll step."""

    def test_poll_empty_queue(self, store):
        assert make_agent(store).poll() is None

    def test_start_then_stop_runs_only_stop(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        queue = CommandQueue(store)
        start = queue.issue("start")
        stop = queue.issue("stop")
        agent = make_agent(store)

        processed = agent.poll()

        assert processed.id == stop.id
        assert processed.status == CommandStatus.COMPLETED
        assert "Superseded" in store.get_command(start.id).reason
        assert store.get_command(start.id).status == CommandStatus.FAILED
        assert not subprocess_mocker.was_called_with("systemctl start")
        assert agent.poll() is None

    def test_scoped_agent_ignores_other_hosts(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        CommandQueue(store, hostname="rig-b").issue("stop")
        agent = make_agent(store, queue_hostname="rig-a")

        assert agent.poll() is None

        mine = CommandQueue(store, hostname="rig-a").issue("start")
        assert agent.poll().id == mine.id


class TestHealthCheck:
    """Test observation and remediation."""

    def test_zero_hashrate_triggers_restart(self, store, subprocess_mocker):
        register_unit(subprocess_mocker, state="active")
        agent = make_agent(store, FakeMinerApi(hashrate=0))

        state = agent.health_check()

        assert state.status == ProcessStatus.UNHEALTHY
        assert state.restart_count == 1
        assert "Zero hashrate" in state.last_error
        assert state.hashrate == 0

        pending = CommandQueue(store).next_pending()
        assert pending.action == "restart"
        assert pending.reason == ZERO_HASHRATE

    def test_restart_count_increments_per_failure(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store, FakeMinerApi(hashrate=0))

        agent.health_check()
        state = agent.health_check()

        assert state.restart_count == 2
        assert len(CommandQueue(store).pending()) == 1

    def test_observation_kept_when_restart_cannot_be_issued(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store, FakeMinerApi(hashrate=0))

        with patch.object(agent.queue, "restart_mining", side_effect=sqlite3.OperationalError("database is locked")):
            with pytest.raises(sqlite3.OperationalError):
                agent.health_check()

        state = store.get_process_state("rig-a")
        assert state.status == ProcessStatus.UNHEALTHY
        assert state.hashrate == 0
        assert state.last_health_check_at is not None
        assert state.last_error == ZERO_HASHRATE
        assert state.error_count == 1
        assert state.restart_count == 0
        assert CommandQueue(store).pending() == []

    def test_probe_unreachable_triggers_restart(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store, FakeMinerApi(error="Miner API unreachable: Connection refused"))

        state = agent.health_check()

        assert state.status == ProcessStatus.UNHEALTHY
        assert "unreachable" in state.last_error
        assert CommandQueue(store).next_pending().action == "restart"

    def test_failed_unit_is_crashed_and_restarted(self, store, subprocess_mocker):
        register_unit(subprocess_mocker, state="failed")
        miner_api = FakeMinerApi()
        agent = make_agent(store, miner_api)

        state = agent.health_check()

        assert state.status == ProcessStatus.CRASHED
        assert state.last_error == SERVICE_FAILED
        assert miner_api.calls == 0
        assert CommandQueue(store).next_pending().reason == SERVICE_FAILED

    def test_healthy_miner(self, store, subprocess_mocker):
        register_unit(subprocess_mocker, pid=99)
        agent = make_agent(store, FakeMinerApi(hashrate=1520.4))

        state = agent.health_check()

        assert state.status == ProcessStatus.RUNNING
        assert state.hashrate == 1520.4
        assert state.pid == 99
        assert state.accepted_shares == 10
        assert state.health_data is not None
        assert state.is_healthy()
        assert CommandQueue(store).next_pending() is None

    def test_warming_up_is_not_zero(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store, FakeMinerApi(hashrate=None))

        state = agent.health_check()

        assert state.status == ProcessStatus.STARTING
        assert state.restart_count == 0
        assert CommandQueue(store).next_pending() is None

    def test_stopped_service_is_left_alone(self, store, subprocess_mocker):
        register_unit(subprocess_mocker, state="inactive")
        agent = make_agent(store)

        state = agent.health_check()

        assert state.status == ProcessStatus.STOPPED
        assert state.restart_count == 0
        assert CommandQueue(store).next_pending() is None

    def test_unknown_unit_state_keeps_status(self, store, subprocess_mocker):
        subprocess_mocker.register("is-active", ProcessResponse(stderr="Failed to connect to bus", returncode=1))
        agent = make_agent(store)

        state = agent.health_check()

        assert state.status == ProcessStatus.STOPPED
        assert "unexpected state" in state.last_error
        assert CommandQueue(store).next_pending() is None

    def test_restart_supersedes_pending_manual_command(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        manual = CommandQueue(store).issue("start", reason="manual")
        agent = make_agent(store, FakeMinerApi(hashrate=0))

        agent.health_check()

        assert store.get_command(manual.id).status == CommandStatus.FAILED
        assert CommandQueue(store).next_pending().action == "restart"


class TestRunLoop:
    """Test the fixed-interval loop."""

    def test_loop_survives_errors(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store)

        with patch.object(MiningAgent, "poll", side_effect=RuntimeError("database is locked")):
            agent.run(max_cycles=3)

        state = store.get_process_state("rig-a")
        assert state.status == ProcessStatus.RUNNING
        assert subprocess_mocker.get_calls_matching("is-active")
        assert len(subprocess_mocker.get_calls_matching("is-active")) == 3

    def test_stop_event_ends_loop(self, store, subprocess_mocker):
        register_unit(subprocess_mocker)
        agent = make_agent(store)
        agent.poll_interval = 30
        stop = threading.Event()

        worker = threading.Thread(target=agent.run, kwargs={"stop_event": stop})
        worker.start()
        stop.set()
        worker.join(timeout=5)

        assert not worker.is_alive()

    def test_close(self, store):
        miner_api = FakeMinerApi()
        make_agent(store, miner_api).close()
        assert miner_api.closed
