"""Command-line entry point for the terminal chat client."""

from __future__ import annotations

import re
import signal
import sys
import threading
import time

from chatsock.client import (
    INPUT_BUFFER_SIZE,
    ChatClient,
    ClientError,
    validate_client_params,
)
from chatsock.protocol import DEFAULT_PORT, log

_POLL_INTERVAL = 0.5
_SHUTDOWN_TIMEOUT = 5.0

_PROG = "chat_client"


def welcome_text() -> str:
    """The banner shown once the client has joined the chat."""
    return (
        "\n"
        "┌─────────────────────────────────────────────────────────────┐\n"
        "│                    CLIENTE DE CHAT TCP                      │\n"
        "│                                                             │\n"
        "│  • Escriba mensajes y presione Enter para enviarlos         │\n"
        "│  • Use /help para ver comandos disponibles                  │\n"
        "│  • Use /quit para salir del chat                            │\n"
        "│                                                             │\n"
        "└─────────────────────────────────────────────────────────────┘\n"
        "\n"
    )


def _prompt(client: ChatClient) -> None:
    client.output.write("> ")
    client.output.flush()


def _input_loop(client: ChatClient, stdin) -> None:
    """Read lines from ``stdin`` and turn them into commands or chat messages."""
    log("INFO", "Thread de entrada iniciado")
    _prompt(client)
    while client.running and client.connected:
        try:
            line = stdin.readline(INPUT_BUFFER_SIZE - 1)
        except (OSError, ValueError):
            break
        if not line:
            break
        if line.endswith("\n"):
            line = line[:-1]
        if not line:
            continue
        if not client.running or not client.connected:
            break
        if not client.process_command(line):
            try:
                client.send_chat_message(line)
            except ClientError:
                log("ERROR", "Error enviando mensaje al servidor")
                break
        if client.running and client.connected:
            _prompt(client)
    log("INFO", "Thread de entrada finalizado")


def run_client(username, server_ip="127.0.0.1", server_port=DEFAULT_PORT) -> None:
    """Join the chat as ``username`` and run until the session ends.

    Raises ClientError if the parameters are invalid or the server cannot be
    reached.
    """
    log("INFO", f"Iniciando cliente de chat para usuario '{username}'")
    validate_client_params(username, server_ip, server_port)

    client = ChatClient(username, server_ip, server_port)
    stdin = sys.stdin

    def _on_signal(signum, frame):
        log("INFO", f"Señal {signum} recibida, cerrando cliente...")
        client.running = False

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for sig in (signal.SIGINT, signal.SIGTERM):
            previous[sig] = signal.signal(sig, _on_signal)
        log("INFO", "Manejadores de señales del cliente configurados")

    try:
        client.connect()
        try:
            client.send_connect_message()
        except ClientError:
            log("ERROR", "Error enviando mensaje de conexión inicial")
            raise

        client.output.write(welcome_text())
        client.output.flush()

        receiver = threading.Thread(target=client.receive_loop, daemon=True)
        reader = threading.Thread(target=_input_loop, args=(client, stdin), daemon=True)
        receiver.start()
        reader.start()

        while client.running and client.connected:
            time.sleep(_POLL_INTERVAL)

        receiver.join(_SHUTDOWN_TIMEOUT)
        if receiver.is_alive():
            log("INFO", "Timeout esperando terminación de threads, cancelando...")
    finally:
        client.close()
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    client.output.write("\nCliente terminado.\n")
    client.output.flush()


def _parse_port(text):
    """Read a leading integer the way atoi does; None if the port is out of range."""
    match = re.match(r"\s*([+-]?\d+)", text)
    port = int(match.group(1)) if match else 0
    return port if 0 < port <= 65535 else None


def main(argv=None) -> int:
    """Parse ``<username> [server_ip] [port]`` and run the client."""
    args = sys.argv[1:] if argv is None else list(argv)
    if not args:
        sys.stderr.write(f"Uso: {_PROG} <nombre_usuario> [ip_servidor] [puerto]\n")
        sys.stderr.write(f"Ejemplo: {_PROG} juan 192.168.1.100 8080\n")
        return 1

    username = args[0]
    server_ip = args[1] if len(args) > 1 else "127.0.0.1"
    server_port = DEFAULT_PORT
    if len(args) > 2:
        parsed = _parse_port(args[2])
        if parsed is None:
            sys.stderr.write(f"Puerto inválido: {args[2]}\n")
            return 1
        server_port = parsed

    try:
        run_client(username, server_ip, server_port)
    except ClientError as exc:
        sys.stderr.write(f"Error: {exc}\n")
        sys.stderr.write("Cliente terminado con errores\n")
        return 1
    return 0