import json

from fusionshare.config import Config, EXAMPLE_CONFIG, load_config


def test_defaults():
    config = Config()
    assert config.port == 8080
    assert config.chunk_size == 16384
    assert config.auto_resume
    assert config.ice_servers[0].startswith('stun:')


def test_from_env(monkeypatch):
    monkeypatch.setenv('FUSION_PORT', '9000')
    monkeypatch.setenv('FUSION_BROKER_URL', 'ws://broker.example/ws')
    monkeypatch.setenv('FUSION_ICE_SERVERS', 'stun:a.example:3478, stun:b.example:3478')
    monkeypatch.setenv('FUSION_AUTO_RESUME', 'false')
    monkeypatch.setenv('FUSION_ACK_TIMEOUT', '2.5')

    config = Config.from_env()
    assert config.port == 9000
    assert config.broker_url == 'ws://broker.example/ws'
    assert config.ice_servers == ['stun:a.example:3478', 'stun:b.example:3478']
    assert not config.auto_resume
    assert config.ack_timeout == 2.5


def test_file_then_env(tmp_path, monkeypatch):
    path = tmp_path / 'config.json'
    path.write_text(json.dumps({'port': 7000, 'chunk_size': 8192, 'download_dir': '/tmp/x'}))
    monkeypatch.setenv('FUSION_PORT', '7100')

    config = load_config(path)
    assert config.port == 7100
    assert config.chunk_size == 8192
    assert str(config.download_dir) == '/tmp/x'


def test_save_and_reload(tmp_path):
    config = Config(port=1234, join_base_url='https://share.example/')
    path = tmp_path / 'saved.json'
    config.save(path)
    assert Config.from_file(path).to_dict() == config.to_dict()


def test_missing_file_gives_defaults(tmp_path):
    assert Config.from_file(tmp_path / 'nope.json').to_dict() == Config().to_dict()


def test_example_config_is_valid_json():
    data = json.loads(EXAMPLE_CONFIG)
    assert set(data) == set(Config().to_dict())
