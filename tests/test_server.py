from fastapi.testclient import TestClient

from fusionshare import __version__
from fusionshare.signaling.broker import SignalingBroker
from fusionshare.signaling.rooms import RoomRegistry
from fusionshare.signaling.server import create_app

from .conftest import SequenceCodes


def make_client(*codes):
    broker = SignalingBroker(RoomRegistry(SequenceCodes(*codes))) if codes else SignalingBroker()
    return TestClient(create_app(broker)), broker


def test_info_endpoints():
    client, _ = make_client()
    with client:
        info = client.get('/').json()
        assert info['version'] == __version__
        assert info['status'] == 'running'
        assert client.get('/health').json() == {'ok': True}


def test_pairing_and_relay_over_websockets():
    client, broker = make_client('7F2K')
    with client:
        with client.websocket_connect('/ws') as host:
            host.send_json({'type': 'CREATE_ROOM'})
            assert host.receive_json() == {'type': 'ROOM_CREATED', 'roomId': '7F2K'}

            with client.websocket_connect('/ws') as guest:
                guest.send_json({'type': 'JOIN_ROOM', 'roomId': '7f2k'})
                assert guest.receive_json() == {'type': 'ROOM_JOINED', 'roomId': '7F2K'}
                assert host.receive_json() == {'type': 'PEER_JOINED', 'roomId': '7F2K'}

                offer = {'type': 'offer', 'sdp': 'v=0\r\n'}
                host.send_json({'type': 'RTC_OFFER', 'sdp': offer})
                assert guest.receive_json() == {'type': 'RTC_OFFER', 'sdp': offer}

                stats = client.get('/stats').json()
                assert stats['paired_rooms'] == 1
                assert stats['connections'] == 2

            assert host.receive_json() == {
                'type': 'PEER_DISCONNECTED', 'message': 'Peer disconnected'
            }


def test_host_disconnect_deletes_room():
    client, broker = make_client('7F2K')
    with client:
        with client.websocket_connect('/ws') as guest:
            with client.websocket_connect('/ws') as host:
                host.send_json({'type': 'CREATE_ROOM'})
                host.receive_json()
                guest.send_json({'type': 'JOIN_ROOM', 'roomId': '7F2K'})
                guest.receive_json()
                host.receive_json()

            assert guest.receive_json() == {
                'type': 'PEER_DISCONNECTED', 'message': 'Host disconnected'
            }
            assert len(broker.registry) == 0


def test_unknown_room_error():
    client, _ = make_client()
    with client:
        with client.websocket_connect('/ws') as ws:
            ws.send_text('garbage')
            ws.send_json({'type': 'JOIN_ROOM', 'roomId': 'ZZZZ'})
            assert ws.receive_json() == {'type': 'ERROR', 'message': 'Room not found'}


def test_binary_frame_keeps_room_alive():
    client, broker = make_client('7F2K')
    with client:
        with client.websocket_connect('/ws') as host:
            host.send_json({'type': 'CREATE_ROOM'})
            assert host.receive_json() == {'type': 'ROOM_CREATED', 'roomId': '7F2K'}

            host.send_bytes(b'\x00garbage')
            host.send_json({'type': 'JOIN_ROOM', 'roomId': 'ZZZZ'})
            assert host.receive_json() == {'type': 'ERROR', 'message': 'Room not found'}
            assert broker.get_stats()['messages_dropped'] == 1

            with client.websocket_connect('/ws') as guest:
                guest.send_json({'type': 'JOIN_ROOM', 'roomId': '7F2K'})
                assert guest.receive_json() == {'type': 'ROOM_JOINED', 'roomId': '7F2K'}
                assert host.receive_json() == {'type': 'PEER_JOINED', 'roomId': '7F2K'}

            assert '7F2K' in broker.registry
            assert broker.get_stats()['messages_dropped'] == 1
