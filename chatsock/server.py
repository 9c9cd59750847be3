"""Multi-client chat server: accepts connections and relays messages."""

from __future__ import annotations

import signal
import socket
import sys
import threading

from chatsock.protocol import (
    DEFAULT_PORT,
    MAX_CLIENTS,
    MESSAGE_STRUCT_SIZE,
    ChatMessage,
    MessageType,
    ProtocolError,
    format_timestamp,
    log,
    validate_username,
)
from chatsock.registry import (
    SYSTEM_USER,
    ClientInfo,
    ClientRegistry,
    RegistryFullError,
    send_message,
)

LISTEN_BACKLOG = 10
CLEANUP_INTERVAL = 300

_ACCEPT_POLL = 0.5


def create_server_socket(port, host=""):
    """Create a TCP socket bound to ``(host, port)`` and listening.

    Raises OSError if the socket cannot be created, bound or put in listen mode.
    """
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(LISTEN_BACKLOG)
    except OSError as exc:
        log("ERROR", f"Error en bind al puerto {port}: {exc}")
        sock.close()
        raise
    log("INFO", f"Socket del servidor creado y configurado en puerto {sock.getsockname()[1]}")
    return sock


def _recv_exact(sock, size):
    """Read exactly ``size`` bytes, or return None if the peer closes first."""
    chunks = bytearray()
    while len(chunks) < size:
        chunk = sock.recv(size - len(chunks))
        if not chunk:
            return None
        chunks.extend(chunk)
    return bytes(chunks)


def _receive_message(sock):
    """Read one message from ``sock``; None on end of stream."""
    data = _recv_exact(sock, MESSAGE_STRUCT_SIZE)
    if data is None:
        return None
    return ChatMessage.from_bytes(data)


def _send_quietly(sock, message):
    try:
        send_message(sock, message)
    except OSError as exc:
        log("ERROR", f"Error enviando mensaje: {exc}")


class ChatServer:
    """Chat server that serves each client on its own thread."""

    def __init__(self, port=DEFAULT_PORT, host=""):
        self.port = port
        self.host = host
        self.registry = ClientRegistry(MAX_CLIENTS)
        self._server_socket = None
        self._stop_event = threading.Event()
        self._state_lock = threading.Lock()
        log("INFO", "Contexto del servidor inicializado correctamente")

    @property
    def running(self) -> bool:
        """True until stop() has been called."""
        return not self._stop_event.is_set()

    def start(self) -> None:
        """Bind the listening socket; ``port`` is updated to the bound port."""
        with self._state_lock:
            if self._server_socket is not None:
                raise RuntimeError("server already started")
            if not self.running:
                raise RuntimeError("server has been stopped")
            log("INFO", f"Iniciando servidor de chat en puerto {self.port}")
            sock = create_server_socket(self.port, self.host)
            sock.settimeout(_ACCEPT_POLL)
            self._server_socket = sock
            self.port = sock.getsockname()[1]

    def serve_forever(self) -> None:
        """Accept connections until stop() is called, then clean up."""
        if self._server_socket is None:
            self.start()
        listener = self._server_socket
        log("INFO", "Servidor iniciado correctamente. Esperando conexiones...")
        sys.stdout.write(self.stats_text())
        sys.stdout.flush()
        try:
            while self.running:
                try:
                    sock, address = listener.accept()
                except socket.timeout:
                    continue
                except OSError as exc:
                    if not self.running:
                        log("INFO", "Socket del servidor cerrado, terminando bucle principal")
                    else:
                        log("ERROR", f"Error en accept: {exc}")
                    break
                sock.settimeout(None)
                log("INFO", f"Nueva conexión desde {address[0]}:{address[1]}")
                worker = threading.Thread(
                    target=self.handle_client, args=(sock, address), daemon=True
                )
                try:
                    worker.start()
                except RuntimeError as exc:
                    log("ERROR", f"Error creando thread para cliente: {exc}")
                    sock.close()
        finally:
            log("INFO", "Cerrando servidor...")
            self.stop()

    def stop(self) -> None:
        """Stop accepting, close the listening socket and drop all clients."""
        with self._state_lock:
            first = self.running
            self._stop_event.set()
            sock, self._server_socket = self._server_socket, None
        if first:
            log("INFO", "Iniciando limpieza del servidor...")
        if sock is not None:
            try:
                sock.close()
            except OSError:
                pass
        self.registry.close_all()
        if first:
            log("INFO", "Limpieza del servidor completada")

    def handle_client(self, sock, address) -> None:
        """Serve one connection: handshake, then relay until it ends."""
        log("INFO", f"Thread iniciado para cliente {address}")
        client = None
        try:
            try:
                message = _receive_message(sock)
            except (OSError, ProtocolError) as exc:
                log("ERROR", f"Mensaje inicial inválido del cliente: {exc}")
                return
            if message is None:
                log("ERROR", "Error recibiendo mensaje inicial del cliente")
                return
            if message.type != MessageType.CONNECT:
                log("ERROR", "Mensaje inicial inválido del cliente")
                return
            if not validate_username(message.username):
                log("ERROR", f"Nombre de usuario inválido: '{message.username}'")
                _send_quietly(
                    sock,
                    ChatMessage.create(MessageType.ERROR, SYSTEM_USER, "Nombre de usuario inválido"),
                )
                return
            try:
                client = self.registry.add(sock, address, message.username)
            except RegistryFullError:
                log("ERROR", f"Error agregando cliente '{message.username}'")
                _send_quietly(
                    sock,
                    ChatMessage.create(
                        MessageType.ERROR, SYSTEM_USER, "Servidor lleno. Intente más tarde."
                    ),
                )
                return
            client.thread = threading.current_thread()

            _send_quietly(
                sock,
                ChatMessage.create(
                    MessageType.NOTIFICATION, SYSTEM_USER, "Conectado al chat. ¡Bienvenido!"
                ),
            )
            self.registry.notify_connected(client.username, exclude=sock)
            self._relay(client)
        finally:
            if client is not None:
                self.handle_client_disconnect(client)
            else:
                try:
                    sock.close()
                except OSError:
                    pass
            log("INFO", "Thread de cliente finalizado")

    def _relay(self, client: ClientInfo) -> None:
        while self.running and client.active:
            try:
                message = _receive_message(client.sock)
            except ProtocolError:
                log("ERROR", f"Error deserializando mensaje del cliente '{client.username}'")
                continue
            except OSError as exc:
                log("ERROR", f"Error recibiendo datos del cliente '{client.username}': {exc}")
                break
            if message is None:
                log("INFO", f"Cliente '{client.username}' cerró la conexión")
                break
            if not self.process_client_message(client, message):
                break

    def process_client_message(self, client, message) -> bool:
        """Act on one message from ``client``; False means end the session."""
        if message.type == MessageType.CHAT:
            relay = ChatMessage.create(MessageType.CHAT, client.username, message.content)
            sent = self.registry.broadcast(relay)
            log("INFO", f"Mensaje de '{client.username}' enviado a {sent} clientes")
            return True
        if message.type == MessageType.DISCONNECT:
            log("INFO", f"Cliente '{client.username}' solicita desconexión")
            client.disconnect_notified = True
            notice = ChatMessage.create(
                MessageType.NOTIFICATION,
                SYSTEM_USER,
                f"[Usuario {client.username} se desconectó]",
            )
            sent = self.registry.broadcast(notice, exclude=client.sock)
            log(
                "INFO",
                f"Notificación de desconexión de '{client.username}' enviada a {sent} clientes",
            )
            client.active = False
            return False
        if message.type == MessageType.KEEPALIVE:
            _send_quietly(client.sock, ChatMessage.create(MessageType.KEEPALIVE, SYSTEM_USER, ""))
            return True
        log(
            "ERROR",
            f"Tipo de mensaje desconocido ({int(message.type)}) del cliente '{client.username}'",
        )
        return True

    def handle_client_disconnect(self, client) -> None:
        """Remove ``client`` from the registry and tell everyone it left."""
        username = client.username
        if self.running:
            try:
                self.registry.remove(client.sock)
            except KeyError:
                pass
        self.registry.notify_disconnected(username)

    def stats_text(self) -> str:
        """Human-readable summary of the server state and its clients."""
        clients = self.registry.active_clients()
        lines = [
            "",
            "=== ESTADÍSTICAS DEL SERVIDOR ===",
            f"Estado: {'Ejecutándose' if self.running else 'Detenido'}",
            f"Clientes conectados: {len(clients)}/{self.registry.max_clients}",
        ]
        if clients:
            lines.append("")
            lines.append("Clientes activos:")
            lines.extend(
                f"  - {c.username} (conectado desde {format_timestamp(c.connect_time)})"
                for c in clients
            )
        lines.append("===============================")
        return "\n".join(lines) + "\n\n"


def _parse_port(text):
    try:
        port = int(text)
    except ValueError:
        return None
    return port if 0 < port <= 65535 else None


def main(argv=None) -> int:
    """Run the chat server; the optional single argument is the port."""
    args = sys.argv[1:] if argv is None else list(argv)
    port = DEFAULT_PORT
    if args:
        parsed = _parse_port(args[0])
        if parsed is None:
            sys.stderr.write(f"Puerto inválido: {args[0]}\n")
            sys.stderr.write("Uso: chat_server [puerto]\n")
            return 1
        port = parsed

    server = ChatServer(port)

    def _on_signal(signum, frame):
        log("INFO", f"Señal {signum} recibida, iniciando cierre del servidor...")
        server.stop()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _on_signal)
        log("INFO", "Manejadores de señales configurados")
    try:
        server.serve_forever()
    except OSError as exc:
        log("ERROR", f"Servidor terminado con errores: {exc}")
        return 1
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)
    log("INFO", "Servidor terminado correctamente")
    return 0