"""Terminal chat client: connects to a chat server and exchanges messages."""

from __future__ import annotations

import socket
import sys
import threading

from chatsock.protocol import (
    DEFAULT_PORT,
    MESSAGE_STRUCT_SIZE,
    USERNAME_SIZE,
    ChatMessage,
    MessageType,
    ProtocolError,
    format_timestamp,
    log,
    validate_username,
)

INPUT_BUFFER_SIZE = 512
RECONNECT_ATTEMPTS = 3
RECONNECT_DELAY = 5

_SERVER_IP_SIZE = 16


class ClientError(Exception):
    """Raised when the client cannot validate, connect or send."""


def _fit(text: str, size: int) -> str:
    encoded = text.encode("utf-8")[: size - 1]
    return encoded.decode("utf-8", errors="ignore")


def validate_client_params(username, server_ip, server_port) -> None:
    """Check the connection parameters, raising ClientError on the first bad one."""
    if not validate_username(username):
        raise ClientError(
            f"Nombre de usuario inválido '{username}'\n"
            "El nombre debe contener solo letras, números y '_'"
        )
    if not isinstance(server_port, int) or not 0 < server_port <= 65535:
        raise ClientError(f"Puerto inválido {server_port}")
    if not server_ip:
        raise ClientError("Dirección IP inválida")


class ChatClient:
    """A connection to a chat server plus the state of the local session."""

    def __init__(self, username, server_ip="127.0.0.1", server_port=DEFAULT_PORT, output=None):
        if username is None or server_ip is None:
            raise ClientError("username and server_ip are required")
        self.username = _fit(username, USERNAME_SIZE)
        self.server_ip = _fit(server_ip, _SERVER_IP_SIZE)
        self.server_port = server_port
        self.output = sys.stdout if output is None else output
        self.connected = False
        self.running = True
        self._sock: socket.socket | None = None
        self._output_lock = threading.Lock()
        self._send_lock = threading.Lock()
        log("INFO", f"Contexto del cliente inicializado para usuario '{self.username}'")

    def __enter__(self) -> "ChatClient":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    def _write(self, text: str) -> None:
        with self._output_lock:
            self.output.write(text)
            self.output.flush()

    def _send(self, message: ChatMessage) -> None:
        sock = self._sock
        if sock is None:
            raise ClientError("not connected")
        with self._send_lock:
            sock.sendall(message.to_bytes())

    def _send_quietly(self, message: ChatMessage) -> None:
        try:
            self._send(message)
        except (OSError, ClientError):
            pass

    def _close_socket(self) -> None:
        sock, self._sock = self._sock, None
        if sock is None:
            return
        try:
            sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        try:
            sock.close()
        except OSError:
            pass

    def connect(self) -> None:
        """Open a TCP connection to the server; raises ClientError on failure."""
        if self.connected:
            raise ClientError("already connected")
        log("INFO", f"Conectando a servidor {self.server_ip}:{self.server_port}...")
        try:
            socket.inet_pton(socket.AF_INET, self.server_ip)
        except OSError:
            log("ERROR", f"Dirección IP inválida: {self.server_ip}")
            raise ClientError(f"Dirección IP inválida: {self.server_ip}") from None
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        try:
            sock.connect((self.server_ip, self.server_port))
        except OSError as exc:
            sock.close()
            log("ERROR", f"Error conectando al servidor: {exc}")
            raise ClientError(f"Error conectando al servidor: {exc}") from exc
        self._sock = sock
        self.connected = True
        log("INFO", "Conexión establecida exitosamente")

    def disconnect(self) -> None:
        """Tell the server we are leaving and close the connection."""
        if not self.connected:
            return
        log("INFO", "Desconectando del servidor...")
        self._send_quietly(ChatMessage.create(MessageType.DISCONNECT, self.username, ""))
        self._close_socket()
        self.connected = False
        log("INFO", "Desconectado del servidor")

    def send_connect_message(self) -> None:
        """Send the initial handshake carrying the username."""
        if not self.connected:
            raise ClientError("not connected")
        try:
            self._send(ChatMessage.create(MessageType.CONNECT, self.username, ""))
        except OSError as exc:
            log("ERROR", f"Error enviando mensaje de conexión: {exc}")
            raise ClientError(f"Error enviando mensaje de conexión: {exc}") from exc
        log("INFO", "Mensaje de conexión enviado al servidor")

    def send_chat_message(self, text) -> None:
        """Send one line of chat text to the server."""
        if text is None or not self.connected:
            raise ClientError("not connected")
        try:
            self._send(ChatMessage.create(MessageType.CHAT, self.username, text))
        except OSError as exc:
            log("ERROR", f"Error enviando mensaje de chat: {exc}")
            raise ClientError(f"Error enviando mensaje de chat: {exc}") from exc

    def _receive(self) -> ChatMessage | None:
        sock = self._sock
        if sock is None:
            return None
        buffer = bytearray()
        while len(buffer) < MESSAGE_STRUCT_SIZE:
            chunk = sock.recv(MESSAGE_STRUCT_SIZE - len(buffer))
            if not chunk:
                return None
            buffer.extend(chunk)
        return ChatMessage.from_bytes(buffer)

    def receive_loop(self) -> None:
        """Receive and handle server messages until the connection ends."""
        log("INFO", "Thread de recepción iniciado")
        while self.running and self.connected:
            try:
                message = self._receive()
            except ProtocolError:
                log("ERROR", "Error deserializando mensaje del servidor")
                continue
            except OSError as exc:
                if self.running:
                    log("ERROR", f"Error recibiendo datos del servidor: {exc}")
                self.connected = False
                self.running = False
                break
            if message is None:
                log("INFO", "Servidor cerró la conexión")
                self.connected = False
                self.running = False
                break
            self.process_server_message(message)
        log("INFO", "Thread de recepción finalizado")

    def process_server_message(self, message) -> None:
        """Display, report or answer one message from the server."""
        if message.type in (MessageType.CHAT, MessageType.NOTIFICATION):
            self.display_message(message)
        elif message.type == MessageType.ERROR:
            self._write(f"\n[ERROR] {message.content}\n")
        elif message.type == MessageType.KEEPALIVE:
            self._send_quietly(ChatMessage.create(MessageType.KEEPALIVE, self.username, ""))
        else:
            log("ERROR", f"Tipo de mensaje desconocido recibido: {int(message.type)}")

    def display_message(self, message) -> None:
        """Print a message with its time, clearing the prompt line first."""
        stamp = format_timestamp(message.timestamp)
        if message.type == MessageType.NOTIFICATION:
            line = f"{stamp} {message.content}"
        else:
            line = f"{stamp} <{message.username}> {message.content}"
        self._write(f"\r\033[K{line}\n")

    def process_command(self, line) -> bool:
        """Handle a '/' command; return False when the line is ordinary chat text."""
        if not line or not line.startswith("/"):
            return False
        if line in ("/help", "/h"):
            self._write(self.help_text())
        elif line in ("/quit", "/q"):
            self._write("Desconectando del chat...\n")
            self._send_quietly(ChatMessage.create(MessageType.DISCONNECT, self.username, ""))
            self.running = False
            self.connected = False
            self._close_socket()
        elif line in ("/status", "/s"):
            self._write(self.status_text())
        else:
            self._write(
                f"Comando no reconocido: {line}\n"
                "Use /help para ver comandos disponibles.\n"
            )
        return True

    def help_text(self) -> str:
        """The list of available commands."""
        return (
            "\n=== COMANDOS DISPONIBLES ===\n"
            "/help, /h     - Mostrar esta ayuda\n"
            "/quit, /q     - Salir del chat\n"
            "/status, /s   - Mostrar estado de conexión\n"
            "\nPara enviar un mensaje, simplemente escriba el texto y presione Enter.\n"
            "===========================\n\n"
        )

    def status_text(self) -> str:
        """A summary of the connection state."""
        return (
            "\n=== ESTADO DEL CLIENTE ===\n"
            f"Usuario: {self.username}\n"
            f"Servidor: {self.server_ip}:{self.server_port}\n"
            f"Estado: {'Conectado' if self.connected else 'Desconectado'}\n"
            f"Ejecutándose: {'Sí' if self.running else 'No'}\n"
            "==========================\n\n"
        )

    def close(self) -> None:
        """Stop the session, leaving the server politely if still connected."""
        log("INFO", "Iniciando limpieza del cliente...")
        self.running = False
        self.disconnect()
        self._close_socket()
        log("INFO", "Limpieza del cliente completada")