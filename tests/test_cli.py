import json
from types import SimpleNamespace

from click.testing import CliRunner

from fusionshare import cli as cli_module
from fusionshare.cli import cli, format_size
from fusionshare.errors import TransferError, TransportError


class StubEndpoint:
    """Stands in for ShareEndpoint; the peer goes away mid-share."""

    instances = []

    def __init__(self, config):
        self.config = config
        self.on_progress = None
        self.on_peer_disconnected = None
        self.closed = False
        self.stop_on_pause = None
        StubEndpoint.instances.append(self)

    async def create_room(self):
        return '7F2K'

    async def join_room(self, code_or_url):
        return '7F2K'

    async def wait_for_channel(self):
        pass

    async def send_file(self, path):
        return SimpleNamespace(file_id='f1')

    async def wait_sent(self, file_id, stop_on_pause=False):
        self.stop_on_pause = stop_on_pause
        raise TransferError("No acknowledgment for chunk 0 after 3 retries", file_id)

    async def wait_received(self):
        raise TransportError("Host disconnected")

    async def close(self):
        self.closed = True


def test_format_size():
    assert format_size(512) == "512.0 B"
    assert format_size(16384) == "16.0 KB"
    assert format_size(5 * 1024 * 1024) == "5.0 MB"


def test_config_command(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'port': 9999}))
    result = CliRunner().invoke(cli, ['--config', str(path), 'config'])
    assert result.exit_code == 0
    assert '9999' in result.output


def test_receive_rejects_bad_code():
    result = CliRunner().invoke(cli, ['receive', 'not a code'])
    assert result.exit_code == 0
    assert 'Room not found' in result.output


def test_send_requires_existing_file(tmp_path):
    result = CliRunner().invoke(cli, ['send', str(tmp_path / 'missing.bin')])
    assert result.exit_code != 0


def test_receive_exits_when_host_leaves(monkeypatch):
    StubEndpoint.instances.clear()
    monkeypatch.setattr(cli_module, 'ShareEndpoint', StubEndpoint)
    result = CliRunner().invoke(cli, ['receive', '7F2K'])
    assert result.exit_code == 0
    assert 'Host disconnected' in result.output
    assert StubEndpoint.instances[0].closed


def test_send_exits_when_transfer_stalls(monkeypatch, tmp_path):
    StubEndpoint.instances.clear()
    monkeypatch.setattr(cli_module, 'ShareEndpoint', StubEndpoint)
    source = tmp_path / 'a.bin'
    source.write_bytes(b'data')
    result = CliRunner().invoke(cli, ['send', str(source)])
    assert result.exit_code == 0
    assert 'Transfer failed' in result.output
    endpoint = StubEndpoint.instances[0]
    assert endpoint.stop_on_pause
    assert endpoint.closed
