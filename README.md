# ndagent

Building blocks for an agent that runs on an OPNsense firewall. The package is
a library; it covers:

- **Relay tunnelling** (`ndagent.pathfinder`): a WebSocket client for a relay
  server, a binary framing protocol that multiplexes many streams over one
  connection, and handlers that route streams to local TCP services, to a
  shell on a pseudo-terminal, or to the local web administration interface
  with a pre-authenticated PHP session.
- **Payload signing** (`ndagent.signing`): Ed25519 COSE_Sign1 envelopes for
  outgoing responses and verification of incoming dispatch envelopes.
- **Durable state** (`ndagent.state`): a crash-safe store for the replay
  barrier and response sequence counters, and on-disk management of the
  device's signing key.
- **Input validation** (`ndagent.security.validation`): checks for ping
  targets, config file paths and log messages.

Requires Python 3.10 or later on a POSIX system (the shell handler uses
`pty`, `fcntl` and `termios`).

## Frames

Every message on a relay connection is a frame: a 1-byte type, a 4-byte
big-endian stream id, a 4-byte big-endian length and the data.

```python
from ndagent.pathfinder.frame import Frame, FrameError, FrameType, decode_frame, encode_frame

wire = encode_frame(Frame(FrameType.OPEN, 1, b"ssh"))
frame = decode_frame(wire)
print(frame.type_string())  # "OPEN"

try:
    decode_frame(b"\x01\x00")
except FrameError as exc:
    print(exc)  # frame too short: missing header
```

Frames whose declared length exceeds 16 MiB are rejected, as are frames
shorter than their declared length.

## Relay client

`PathfinderClient` (in `ndagent.pathfinder.client`) connects, registers as an
agent, and waits for a peer to pair. `run_frame_loop(stop_event)` then passes
each incoming binary message to the handler set with `on_frame`, sending a
ping every 30 seconds; it returns when the event is set and raises
`PathfinderError` when the connection fails. `send_frame` may be called from
several threads.

## Streams and services

`StreamManager` (in `ndagent.pathfinder.stream`) installs itself as the
client's frame handler, answers `OPEN` frames with `ACK`, and runs the handler
given to `on_new_stream` in its own thread for each new `Stream`. A `Stream`
has `read`, `write`, `close`, `is_closed` and `wait_closed`; writes are split
into 32 KiB frames, and writing to a closed stream raises `StreamClosedError`.
`on_all_streams_closed` sets a callback run when the last open stream closes.

`TCPProxy.proxy_stream_to_local` (in `ndagent.pathfinder.proxy`) is a
ready-made stream handler:

- `shell` and `shell-ctl` streams are paired by `ShellManager`; once both have
  arrived the shell runs on a pseudo-terminal, and resize messages on the
  control stream (`encode_resize(rows, cols)`) set the window size.
- `webadmin` streams are served by `HTTPProxy`, which reads HTTP requests from
  the stream, forwards them over HTTPS (certificate checks off) to the local
  web interface with a shared PHP session injected as the `PHPSESSID` cookie,
  and writes the responses back. A failed upstream request is answered with
  `502 Bad Gateway`.
- any other name is looked up among the services registered with
  `add_service`; an unknown name raises `LookupError`, and a service that
  cannot be reached raises `ConnectionError`.

```python
from ndagent.pathfinder.client import PathfinderClient
from ndagent.pathfinder.proxy import ProxyConfig, TCPProxy, default_opnsense_services
from ndagent.pathfinder.stream import StreamManager

client = PathfinderClient("wss://relay.example.com/ws", "token", "device-0001", None)
client.connect()
client.wait_for_pairing(300)

proxy = TCPProxy(ProxyConfig())
for service in default_opnsense_services(0):
    proxy.add_service(service)

streams = StreamManager(client)
streams.on_new_stream(proxy.proxy_stream_to_local)
client.run_frame_loop()
```

`ProxyConfig` takes the shell path (default `/usr/local/sbin/opnsense-shell`),
the web interface user (default `root`), the PHP session directory (default
`/var/lib/php/sessions`) and the web interface port (default 443).
`TCPProxy.close_all()` closes unpaired shell streams and deletes the shared
PHP session file.

## Signing

```python
from ndagent.signing import (
    build_response_envelope,
    generate_keypair,
    kid_from_pubkey,
    verify_dispatch_envelope,
)

pub, priv = generate_keypair()
kid = kid_from_pubkey(pub)
envelope = build_response_envelope(priv, kid, 42, "device-0001", b"{}", 1, 0)
```

`verify_dispatch_envelope(envelope, lookup)` takes a function mapping a key id
to a public key (an `Ed25519PublicKey` or 32 raw bytes); it checks the
signature, requires algorithm Ed25519 and envelope version 2, and returns a
`DecodedEnvelope`. Failures raise `SigningError`. Semantic checks (issuer,
device, task id ordering, expiry) are left to the caller.
`private_key_from_base64` and `public_key_from_base64` decode the base64 forms
of a 32-byte seed and a 32-byte public key.

## State and device key

```python
from ndagent.state.device_key import PrivkeyOrigin, load_or_ensure_device_privkey
from ndagent.state.store import StateStore

seed_b64, origin = load_or_ensure_device_privkey("/var/db/ndagent/device.key", "")
if origin is PrivkeyOrigin.GENERATED:
    print("new keypair: the device must be re-bound")

store = StateStore("/var/db/ndagent/state")
seq = store.acquire_next_response_seq()
```

The key file is read first; if it is missing, empty or malformed, a valid seed
given as the fallback is migrated into it; failing that, a fresh keypair is
generated. `rotate_device_privkey` always writes a fresh seed. Files are
written atomically with mode 0600. `set_last_executed_task_id` refuses to
move backwards and raises `StateError`; a failed write of the response
sequence rolls the counter back.

## Validation

```python
from ndagent.security.validation import (
    InvalidTargetFormatError,
    sanitize_log_message,
    validate_ping_target,
)

validate_ping_target("example.com")
try:
    validate_ping_target("8.8.8.8;ls")
except InvalidTargetFormatError:
    pass

print(sanitize_log_message("line1\nline2"))  # "line1 line2"
```

Every validator raises a subclass of `ValidationError` (itself a
`ValueError`); `is_safe_file_path` returns a bool instead.

## What this package does not do

There is no runnable agent: no command, no configuration file loading, no
connection to a management service and no reconnect loop. Nor does it write a
status file for a GUI to read. Callers wire the pieces above together
themselves.