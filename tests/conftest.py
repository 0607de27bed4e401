"""
Pytest configuration and fixtures for tree map tests.
"""

from concurrent.futures import Executor, Future

import pytest
import geopandas as gpd
from shapely.geometry import Point, Polygon

from components.treemap.config import TreeMapConfig
from components.treemap.gateway import GeoDataFrameGateway
from components.treemap.sequencing import RequestSequencer
from components.treemap.session import MapSession


@pytest.fixture
def sample_trees_data():
    """Create sample tree points around the Hue citadel."""
    data = {
        'OBJECTID': [1, 2, 3, 4, 5, 6],
        'TenCay': ['Phượng vĩ', 'Bằng lăng', "Cây O'Brien", 'Sao đen', 'Muồng hoàng yến', 'Phượng tím'],
        'LoaiCay': ['Cây bóng mát', 'Cây bóng mát', 'Cây cảnh', 'Cây bóng mát', 'Cây hoa', 'Cây hoa'],
        'TenTuyenDu': ['Lê Lợi', 'Lê Lợi', 'Hùng Vương', 'Hùng Vương', 'Nguyễn Huệ', None],
        'DiaChi': ['Phú Hội', 'Vĩnh Ninh', 'Phú Hội', 'Phú Nhuận', 'Vĩnh Ninh', 'Phú Nhuận'],
        'geometry': [
            Point(107.5850, 16.4650),
            Point(107.5860, 16.4640),
            Point(107.5900, 16.4600),
            Point(107.5950, 16.4580),
            Point(107.5800, 16.4620),
            Point(107.6000, 16.4550),
        ]
    }
    return gpd.GeoDataFrame(data, crs="EPSG:4326")


@pytest.fixture
def sample_heritage_data():
    """Create sample heritage site polygons."""
    data = {
        'OBJECTID': [10, 11],
        'TenDiTich': ['Kinh thành Huế', 'Chùa Thiên Mụ'],
        'DienTich': [520.0, 35.5],
        'geometry': [
            Polygon([(107.570, 16.460), (107.585, 16.460), (107.585, 16.475), (107.570, 16.475)]),
            Polygon([(107.545, 16.452), (107.548, 16.452), (107.548, 16.455), (107.545, 16.455)]),
        ]
    }
    return gpd.GeoDataFrame(data, crs="EPSG:4326")


class ManualExecutor(Executor):
    """Executor whose futures only complete when a test runs them, in any order."""

    def __init__(self):
        self.calls = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.calls.append((future, fn, args, kwargs))
        return future

    def run(self, index):
        future, fn, args, kwargs = self.calls[index]
        if future.done():
            return future
        try:
            future.set_result(fn(*args, **kwargs))
        except Exception as e:
            future.set_exception(e)
        return future

    def run_all(self):
        for index in range(len(self.calls)):
            self.run(index)

    @property
    def outstanding(self):
        return sum(1 for future, *_ in self.calls if not future.done())

    def shutdown(self, wait=True, **kwargs):
        pass


@pytest.fixture
def manual_executor():
    return ManualExecutor()


@pytest.fixture
def sequencer(manual_executor):
    return RequestSequencer(executor=manual_executor)


@pytest.fixture
def trees_gateway(sample_trees_data):
    return GeoDataFrameGateway(sample_trees_data, object_id_field='OBJECTID')


@pytest.fixture
def treemap_config(tmp_path):
    """Default configuration without the heritage layer."""
    config = TreeMapConfig(str(tmp_path / "treemap_config.json"))
    config.update({"features": {"heritage_layer": False}})
    return config


def _settle(session_or_sequencer, executor):
    while executor.outstanding:
        executor.run_all()
        session_or_sequencer.process_completions()
    session_or_sequencer.process_completions()


@pytest.fixture
def settle(manual_executor):
    """Run every queued request and apply the completions until nothing is left."""
    return lambda target: _settle(target, manual_executor)


@pytest.fixture
def map_session(treemap_config, trees_gateway, sequencer):
    """A map session over the sample trees, not yet started."""
    session = MapSession(treemap_config, gateways={'trees': trees_gateway}, sequencer=sequencer)
    yield session
    session.close()


@pytest.fixture
def started_session(map_session, manual_executor):
    """A map session whose startup queries have all been applied."""
    map_session.start()
    _settle(map_session, manual_executor)
    return map_session


def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "unit: mark test as a unit test"
    )
    config.addinivalue_line(
        "markers", "integration: mark test as an integration test"
    )
    config.addinivalue_line(
        "markers", "slow: mark test as slow running"
    )
