import socket
import threading

import pytest

from chatsock.protocol import MESSAGE_STRUCT_SIZE, ChatMessage, MessageType
from chatsock.registry import ClientRegistry
from chatsock.server import ChatServer, create_server_socket, main


class FakeSocket:
    def __init__(self):
        self.sent = []
        self.closed = False

    def sendall(self, data):
        self.sent.append(bytes(data))

    def close(self):
        self.closed = True

    def shutdown(self, how):
        pass


def _decoded(fake):
    return [ChatMessage.from_bytes(data) for data in fake.sent]


def _read(sock):
    buf = bytearray()
    while len(buf) < MESSAGE_STRUCT_SIZE:
        chunk = sock.recv(MESSAGE_STRUCT_SIZE - len(buf))
        if not chunk:
            return None
        buf.extend(chunk)
    return ChatMessage.from_bytes(bytes(buf))


def _next_matching(sock, predicate):
    while True:
        msg = _read(sock)
        assert msg is not None, "connection closed before expected message"
        if predicate(msg):
            return msg


@pytest.fixture
def server():
    srv = ChatServer(0, "127.0.0.1")
    srv.start()
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    yield srv
    srv.stop()
    thread.join(5)


def _join(srv, name):
    sock = socket.create_connection(("127.0.0.1", srv.port), timeout=5)
    sock.sendall(ChatMessage.create(MessageType.CONNECT, name, "").to_bytes())
    return sock


def test_create_server_socket_listens():
    listener = create_server_socket(0, "127.0.0.1")
    try:
        port = listener.getsockname()[1]
        assert port > 0
        conn = socket.create_connection(("127.0.0.1", port), timeout=5)
        accepted, _ = listener.accept()
        assert accepted.getpeername() == conn.getsockname()
        accepted.close()
        conn.close()
    finally:
        listener.close()


def test_create_server_socket_port_in_use():
    listener = create_server_socket(0, "127.0.0.1")
    try:
        with pytest.raises(OSError):
            create_server_socket(listener.getsockname()[1], "127.0.0.1")
    finally:
        listener.close()


def test_welcome_message(server):
    with _join(server, "alice") as sock:
        msg = _read(sock)
        assert msg.type == MessageType.NOTIFICATION
        assert msg.username == "Sistema"
        assert msg.content == "Conectado al chat. ¡Bienvenido!"


def test_join_notifies_others(server):
    with _join(server, "alice") as alice:
        _read(alice)
        with _join(server, "bob") as bob:
            _read(bob)
            notice = _next_matching(alice, lambda m: m.type == MessageType.NOTIFICATION)
            assert notice.content == "[Usuario bob se conectó]"


def test_chat_broadcast_includes_sender(server):
    with _join(server, "alice") as alice, _join(server, "bob") as bob:
        _read(alice)
        _read(bob)
        alice.sendall(ChatMessage.create(MessageType.CHAT, "alice", "hola").to_bytes())
        for sock in (alice, bob):
            msg = _next_matching(sock, lambda m: m.type == MessageType.CHAT)
            assert (msg.username, msg.content) == ("alice", "hola")


def test_invalid_username_rejected(server):
    with _join(server, "bad name") as sock:
        msg = _read(sock)
        assert msg.type == MessageType.ERROR
        assert msg.content == "Nombre de usuario inválido"
        assert _read(sock) is None


def test_first_message_must_be_connect(server):
    with socket.create_connection(("127.0.0.1", server.port), timeout=5) as sock:
        sock.sendall(ChatMessage.create(MessageType.CHAT, "alice", "x").to_bytes())
        assert _read(sock) is None


def test_server_full(server):
    server.registry = ClientRegistry(1)
    with _join(server, "alice") as alice:
        assert _read(alice).type == MessageType.NOTIFICATION
        with _join(server, "bob") as bob:
            msg = _read(bob)
            assert msg.type == MessageType.ERROR
            assert msg.content == "Servidor lleno. Intente más tarde."


def test_disconnect_notifies_others(server):
    with _join(server, "alice") as alice:
        _read(alice)
        bob = _join(server, "bob")
        _read(bob)
        bob.sendall(ChatMessage.create(MessageType.DISCONNECT, "bob", "").to_bytes())
        notice = _next_matching(alice, lambda m: "desconect" in m.content)
        assert notice.content == "[Usuario bob se desconectó]"
        assert _read(bob) is None
        bob.close()


def test_keepalive_over_network(server):
    with _join(server, "alice") as sock:
        _read(sock)
        sock.sendall(ChatMessage.create(MessageType.KEEPALIVE, "alice", "").to_bytes())
        msg = _next_matching(sock, lambda m: m.type == MessageType.KEEPALIVE)
        assert msg.username == "Sistema"


def test_stop_ends_serve_forever():
    srv = ChatServer(0, "127.0.0.1")
    srv.start()
    thread = threading.Thread(target=srv.serve_forever, daemon=True)
    thread.start()
    srv.stop()
    thread.join(5)
    assert not thread.is_alive()
    assert srv.running is False
    assert srv.registry.closed


def test_process_chat_message():
    srv = ChatServer(0, "127.0.0.1")
    a, b = FakeSocket(), FakeSocket()
    alice = srv.registry.add(a, None, "alice")
    srv.registry.add(b, None, "bob")
    keep = srv.process_client_message(alice, ChatMessage.create(MessageType.CHAT, "x", "hello"))
    assert keep is True
    for fake in (a, b):
        msg = _decoded(fake)[-1]
        assert (msg.type, msg.username, msg.content) == (MessageType.CHAT, "alice", "hello")


def test_process_disconnect_message():
    srv = ChatServer(0, "127.0.0.1")
    a, b = FakeSocket(), FakeSocket()
    alice = srv.registry.add(a, None, "alice")
    srv.registry.add(b, None, "bob")
    keep = srv.process_client_message(alice, ChatMessage.create(MessageType.DISCONNECT, "alice", ""))
    assert keep is False
    assert alice.active is False
    assert alice.disconnect_notified is True
    assert a.sent == []
    assert _decoded(b)[-1].content == "[Usuario alice se desconectó]"


def test_process_keepalive_message():
    srv = ChatServer(0, "127.0.0.1")
    a = FakeSocket()
    alice = srv.registry.add(a, None, "alice")
    assert srv.process_client_message(alice, ChatMessage.create(MessageType.KEEPALIVE, "alice", ""))
    reply = _decoded(a)[-1]
    assert (reply.type, reply.username, reply.content) == (MessageType.KEEPALIVE, "Sistema", "")


def test_handle_client_disconnect():
    srv = ChatServer(0, "127.0.0.1")
    a, b = FakeSocket(), FakeSocket()
    alice = srv.registry.add(a, None, "alice")
    srv.registry.add(b, None, "bob")
    srv.handle_client_disconnect(alice)
    assert srv.registry.find(a) is None
    assert a.closed
    contents = [m.content for m in _decoded(b)]
    assert contents and all(c == "[Usuario alice se desconectó]" for c in contents)
    assert [c.username for c in srv.registry.active_clients()] == ["bob"]


def test_stats_text():
    srv = ChatServer(0, "127.0.0.1")
    empty = srv.stats_text()
    assert "Clientes conectados: 0/50" in empty
    assert "Clientes activos" not in empty
    srv.registry.add(FakeSocket(), None, "alice")
    text = srv.stats_text()
    assert "Clientes conectados: 1/50" in text
    assert "  - alice (conectado desde [" in text
    assert "Estado: Ejecutándose" in text


@pytest.mark.parametrize("arg", ["abc", "0", "70000"])
def test_main_rejects_bad_port(arg, capsys):
    assert main([arg]) == 1
    assert f"Puerto inválido: {arg}" in capsys.readouterr().err