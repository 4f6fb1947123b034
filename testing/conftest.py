import json, logging, pytest, pytest_asyncio

from obs_mock_server import SceneModel, FakeSession, MockObsServer, build_router_scene
from pov_config import DEFAULT_CONFIG, merge_config
from pov_notify import NotificationHub
from pov_router import FocusRouter
from pov_switcher import SourceSwitcher
from pov_topology import TopologyCache

ALICE = "76500000000000001"
BOB = "76500000000000002"
CAROL = "76500000000000003"
UNMAPPED = "76500000000000099"


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def logger():
    return logging.getLogger("POV-Router.Test")


@pytest.fixture
def safe_config_dir(tmp_path, monkeypatch):
    """Config dir that mimics /etc/pov-router, with the legacy env vars cleared."""
    etc = tmp_path / "etc" / "pov-router"
    etc.mkdir(parents=True)
    for var in ("OBS_URL", "OBS_PASS", "ROUTER_SCENE", "MAPPING_FILE", "PORT",
                "GSI_TOKEN", "MIN_SWITCH_INTERVAL_MS", "DEFAULT_SOURCE"):
        monkeypatch.delenv(var, raising=False)
    monkeypatch.setenv("POV_CONFIG_DIR", str(etc))
    return etc


@pytest.fixture
def config(tmp_path):
    return merge_config(DEFAULT_CONFIG, {
        "routing": {"router_scene": "POV_ROUTER", "debounce_window": 0.15},
        "mapping": {"file": str(tmp_path / "mapping.json")},
        "system": {"log_dir": str(tmp_path / "logs")},
    })


@pytest.fixture
def model():
    return build_router_scene(SceneModel())


@pytest.fixture
def session(model):
    return FakeSession(model)


@pytest.fixture
def topology(session, logger):
    return TopologyCache(session, logger)


@pytest.fixture
def switcher(config, session, topology, logger):
    return SourceSwitcher(config, session, topology, logger)


@pytest.fixture
def hub(logger):
    return NotificationHub(logger)


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def router(config, switcher, hub, logger, clock):
    router = FocusRouter(config, switcher, hub, logger,
                         mapping={ALICE: "POV_Alice", BOB: "POV_Bob", CAROL: "POV_Carol"},
                         clock=clock)
    router.start()
    yield router
    await router.stop()


@pytest_asyncio.fixture
async def obs_server(model):
    server = await MockObsServer(model).start()
    yield server
    await server.stop()


def write_json(path, data):
    path.write_text(json.dumps(data, indent=2))
    return path
