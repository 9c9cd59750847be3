# chatsock

A small multi-client TCP chat system. It has a threaded server that relays
messages between everyone connected, and a terminal client for talking through
it.

## Features

- Up to 50 concurrent users per server. When the server is full, a joining
  client gets the error `Servidor lleno. Intente más tarde.`
- Every chat message goes to all connected users, the sender included.
- The server announces each user who joins (`[Usuario ana se conectó]`) to the
  other users. It announces each user who leaves (`[Usuario ana se desconectó]`).
- User names must not be empty, must be shorter than 32 characters, and may
  contain only ASCII letters, digits and `_`.
- Messages are shown with a local `[HH:MM:SS]` timestamp.
- The server answers keepalive messages, and so does the client.

## Installation

```
pip install .
```

## Running the server

```
chatsock-server [port]
```

The port defaults to 8080 and must lie between 1 and 65535. The server listens
on all interfaces. Stop it with Ctrl+C (SIGINT) or SIGTERM. It then closes the
listening socket and disconnects every client.

## Running the client

```
chatsock-client <username> [server_ip] [port]
```

The server address defaults to `127.0.0.1` and the port defaults to 8080. The
address must be a dotted IPv4 address. Host names are not resolved. For example:

```
chatsock-client juan 192.168.1.100 8080
```

Once connected, type a line and press Enter to send it. Empty lines are
ignored. A line that begins with `/` is a command:

| Command           | Action                          |
|-------------------|---------------------------------|
| `/help`, `/h`     | Show the list of commands       |
| `/quit`, `/q`     | Leave the chat                  |
| `/status`, `/s`   | Show the connection state       |

Any other `/` line is reported as an unknown command and is not sent.

Both commands exit with status 1 on bad arguments. The client also exits with
status 1 when it cannot connect.

## Using it from Python

The package has these modules:

- `chatsock.protocol`: `ChatMessage`, `MessageType`, `ProtocolError`,
  `validate_username`, `format_timestamp` and `log`.
- `chatsock.registry`: `ClientRegistry`, `ClientInfo`, `RegistryFullError` and
  `send_message`.
- `chatsock.server`: `ChatServer`, `create_server_socket` and `main`.
- `chatsock.client`: `ChatClient`, `ClientError` and `validate_client_params`.
- `chatsock.cli`: `run_client`, `welcome_text` and `main`.

Example:

```python
import threading

from chatsock.protocol import ChatMessage, MessageType
from chatsock.server import ChatServer
from chatsock.client import ChatClient

message = ChatMessage.create(MessageType.CHAT, "ana", "hola")
assert ChatMessage.from_bytes(message.to_bytes()).content == "hola"

server = ChatServer(0, "127.0.0.1")   # port 0: pick a free port
server.start()                        # server.port now holds the bound port
threading.Thread(target=server.serve_forever, daemon=True).start()

with ChatClient("ana", "127.0.0.1", server.port) as client:
    client.connect()
    client.send_connect_message()
    client.send_chat_message("hola")

server.stop()
```

Each message goes over the wire as one fixed-size frame. The frame holds the
message type, user name, content, timestamp and length. Decoding a frame that
has an unknown type or too few bytes raises `ProtocolError`. A user name or
content that is too long for its field is cut to fit.

## What it does not do

- There are no private messages, chat rooms or message history. Nothing is
  stored.
- There is no authentication and no encryption. Any client that sends a valid
  user name is let in.
- The client does not reconnect after the server closes the connection.
- Neither side sends keepalives on its own. They only answer them.

## Running the tests

```
pip install .[test]
pytest
```