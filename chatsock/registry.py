"""Thread-safe bookkeeping of the clients connected to a chat server."""

from __future__ import annotations

import socket
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Iterator

from chatsock.protocol import (
    MAX_CLIENTS,
    USERNAME_SIZE,
    ChatMessage,
    MessageType,
    log,
)

SYSTEM_USER = "Sistema"


class RegistryFullError(RuntimeError):
    """Raised when no slot is left for a new client."""


def _fit_username(username: str) -> str:
    encoded = username.encode("utf-8")[: USERNAME_SIZE - 1]
    return encoded.decode("utf-8", errors="ignore")


@dataclass(eq=False)
class ClientInfo:
    """One connected client: its socket, name, address and state."""

    sock: Any
    username: str
    address: Any
    slot: int
    connect_time: int = field(default_factory=lambda: int(time.time()))
    thread: threading.Thread | None = None
    active: bool = True
    disconnect_notified: bool = False


def send_message(sock, message: ChatMessage) -> None:
    """Send one encoded message over ``sock``; socket errors propagate as OSError."""
    sock.sendall(message.to_bytes())


def _close_quietly(sock) -> None:
    try:
        sock.close()
    except OSError:
        pass


class ClientRegistry:
    """Fixed-capacity table of connected clients guarded by a lock."""

    def __init__(self, max_clients=MAX_CLIENTS):
        if max_clients <= 0:
            raise ValueError("max_clients must be positive")
        self.max_clients = max_clients
        self._slots: list[ClientInfo | None] = [None] * max_clients
        self._lock = threading.RLock()
        self._closed = False

    def __len__(self) -> int:
        with self._lock:
            return sum(1 for slot in self._slots if slot is not None)

    def __iter__(self) -> Iterator[ClientInfo]:
        return iter(self.active_clients())

    def _occupied(self) -> Iterator[ClientInfo]:
        return (client for client in self._slots if client is not None)

    def add(self, sock, address, username) -> ClientInfo:
        """Register a client in the first free slot and return its record."""
        if not username:
            raise ValueError("username is required")
        with self._lock:
            try:
                index = self._slots.index(None)
            except ValueError:
                log("ERROR", f"Límite máximo de clientes alcanzado ({self.max_clients})")
                raise RegistryFullError(
                    f"client limit reached ({self.max_clients})"
                ) from None
            client = ClientInfo(
                sock=sock,
                username=_fit_username(username),
                address=address,
                slot=index,
            )
            self._slots[index] = client
            total = len(self)
        log("INFO", f"Cliente '{client.username}' agregado (total: {total}/{self.max_clients})")
        return client

    def remove(self, sock) -> None:
        """Drop the client using ``sock``, telling the others it left.

        Does nothing once the registry has been closed; raises KeyError if the
        socket belongs to no registered client.
        """
        with self._lock:
            if self._closed:
                return
            client = next((c for c in self._occupied() if c.sock is sock), None)
            if client is None:
                log("ERROR", "Cliente no encontrado para remover")
                raise KeyError(sock)
            if not client.disconnect_notified:
                client.disconnect_notified = True
                notice = ChatMessage.create(
                    MessageType.NOTIFICATION,
                    SYSTEM_USER,
                    f"[Usuario {client.username} se desconectó]",
                )
                sent = self.broadcast(notice, exclude=sock)
                log(
                    "INFO",
                    f"Cliente '{client.username}' se desconectó. "
                    f"Notificación enviada a {sent} clientes",
                )
            client.active = False
            _close_quietly(client.sock)
            self._slots[client.slot] = None
            total = len(self)
        log("INFO", f"Cliente removido (total: {total}/{self.max_clients})")

    def find(self, sock) -> ClientInfo | None:
        """Return the active client using ``sock``, or None."""
        with self._lock:
            return next(
                (c for c in self._occupied() if c.active and c.sock is sock), None
            )

    def broadcast(self, message: ChatMessage, exclude=None) -> int:
        """Send ``message`` to every active client except ``exclude``.

        Clients whose socket fails are marked inactive. Returns how many
        clients received the message.
        """
        data = message.to_bytes()
        sent_count = 0
        with self._lock:
            for client in self._occupied():
                if not client.active or (exclude is not None and client.sock is exclude):
                    continue
                try:
                    client.sock.sendall(data)
                except OSError as exc:
                    log("ERROR", f"Error enviando mensaje a cliente '{client.username}': {exc}")
                    client.active = False
                else:
                    sent_count += 1
        return sent_count

    def notify_connected(self, username, exclude=None) -> int:
        """Announce that ``username`` joined; returns the number of recipients."""
        notice = ChatMessage.create(
            MessageType.NOTIFICATION, SYSTEM_USER, f"[Usuario {username} se conectó]"
        )
        sent = self.broadcast(notice, exclude=exclude)
        log("INFO", f"Notificación de conexión de '{username}' enviada a {sent} clientes")
        return sent

    def notify_disconnected(self, username) -> int:
        """Announce to everyone that ``username`` left; returns the number of recipients."""
        notice = ChatMessage.create(
            MessageType.NOTIFICATION, SYSTEM_USER, f"[Usuario {username} se desconectó]"
        )
        sent = self.broadcast(notice)
        log("INFO", f"Notificación de desconexión de '{username}' enviada a {sent} clientes")
        return sent

    def active_clients(self) -> list[ClientInfo]:
        """Snapshot of the active clients in slot order."""
        with self._lock:
            return [c for c in self._occupied() if c.active]

    def close_all(self) -> None:
        """Shut down every client socket and empty the registry for good."""
        log("INFO", "Desconectando todos los clientes...")
        with self._lock:
            self._closed = True
            for client in self._occupied():
                if client.active:
                    log("INFO", f"Desconectando cliente '{client.username}'")
                    try:
                        client.sock.shutdown(socket.SHUT_RDWR)
                    except OSError:
                        pass
                client.active = False
                _close_quietly(client.sock)
            self._slots = [None] * self.max_clients

    @property
    def closed(self) -> bool:
        """True once close_all has run."""
        return self._closed