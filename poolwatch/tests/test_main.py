import pytest

from poolwatch import main as main_mod
from poolwatch.common.config import ConfigError, Settings

POOL = "0x88e6a0c2ddd26feeb64f039a2c41296fcb3f5640"


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for key in ("POOLS", "POOL_MANIFEST_PATH", "RPC_WS_URL", "RPC_HTTP_URL"):
        monkeypatch.delenv(key, raising=False)


def test_build_components_wires_pools():
    comps = main_mod.build_components(Settings(_env_file=None, POOLS=POOL))
    assert comps["pools"] == [POOL]
    assert comps["dispatcher"].sinks[-1] is comps["board"]
    assert comps["manager"].supervisor is comps["supervisor"]


@pytest.mark.parametrize(
    "overrides",
    [
        {"POOLS": ""},
        {"POOLS": "0xdead"},
        {"POOLS": POOL, "RPC_WS_URL": "https://not-a-socket"},
        {"POOLS": POOL, "RPC_HTTP_URL": "wss://not-http"},
    ],
)
def test_build_components_rejects_bad_config(overrides):
    with pytest.raises(ConfigError):
        main_mod.build_components(Settings(_env_file=None, **overrides))


@pytest.mark.asyncio
async def test_run_exits_with_code_2_on_config_error(monkeypatch):
    monkeypatch.setenv("POOLS", "not-a-pool")
    monkeypatch.setattr(main_mod, "Settings", lambda: Settings(_env_file=None))
    assert await main_mod.run(["--no-dashboard"]) == 2


class DeadSupervisor:
    async def wait(self):
        raise OverflowError("supervisor died")


@pytest.mark.asyncio
async def test_run_exits_non_zero_when_supervisor_dies(monkeypatch):
    stopped = []

    async def fake_start(comps):
        return []

    async def fake_stop(comps, tasks):
        stopped.append(True)

    comps = {"pools": [POOL], "supervisor": DeadSupervisor()}
    monkeypatch.setattr(main_mod, "Settings", lambda: Settings(_env_file=None, POOLS=POOL))
    monkeypatch.setattr(main_mod, "build_components", lambda settings: comps)
    monkeypatch.setattr(main_mod, "start_components", fake_start)
    monkeypatch.setattr(main_mod, "stop_components", fake_stop)
    assert await main_mod.run(["--no-dashboard"]) == 1
    assert stopped == [True]
