"""
Shared fixtures: a fresh SQLite file per test, seeded with one station, two
ports and three users, plus a simulated device gateway.
"""

import asyncio
from datetime import date
from types import SimpleNamespace

import pytest
import pytest_asyncio

import database
from models import init_db
from seed import seed_if_empty
from services import device_gateway, port_monitor, repository, session_controller

DEVICE = "ESP32_CHARGER_STATION_001"

# user_id -> plan_id (plan 3: 2000 mAh/day, 1 port; plan 4: 8000 mAh/day, 2 ports)
TEST_USERS = {"alice": 3, "bob": 3, "carol": 4}


async def prepare_database(path):
    database.reset_db_path(str(path))
    await init_db()
    async with database.get_db() as db:
        await seed_if_empty(db)
        for user_id, plan_id in TEST_USERS.items():
            plan = await repository.get_plan(db, plan_id)
            await repository.create_subscription(db, user_id, plan, date.today())


def install_services(ack_timeout: float = 0.2):
    gateway = device_gateway.SimulatedDeviceGateway()
    device_gateway.set_gateway(gateway)
    port_monitor.reset_monitor()
    controller = session_controller.SessionController(ack_timeout=ack_timeout)
    session_controller.set_controller(controller)
    return SimpleNamespace(
        gateway=gateway,
        controller=controller,
        monitor=port_monitor.get_monitor(),
    )


def uninstall_services():
    device_gateway.set_gateway(None)
    port_monitor.reset_monitor()
    session_controller.set_controller(session_controller.SessionController())
    database.reset_db_path(None)


@pytest_asyncio.fixture
async def env(tmp_path):
    """
    Seeded database and simulated hardware for one test.
    Services are rebuilt per test: their asyncio locks belong to the test's loop.
    """
    await prepare_database(tmp_path / "charge_ports.db")
    services = install_services()
    yield services
    await services.monitor.stop()
    uninstall_services()


@pytest.fixture
def api_env(tmp_path):
    """Same setup for TestClient-based tests, which run their own event loop"""
    asyncio.run(prepare_database(tmp_path / "charge_ports.db"))
    services = install_services(ack_timeout=1.0)
    yield services
    uninstall_services()
