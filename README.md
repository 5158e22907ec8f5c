# turnproxy

`turnproxy` is an asyncio library with the parts of a proxy that carries UDP
datagrams from a local endpoint through TURN relay workers to a remote peer.
A supervised session runs several workers at once, spreads local datagrams
across the ready ones in round-robin order, sends replies back to the local
sender they belong to, and restarts a worker that fails after it became
ready, within a restart budget.

Some TURN credential providers put an interactive challenge (such as a
captcha) in front of the credentials. For those, the package launches a local
Chromium, drives it over the DevTools protocol, lets the operator finish the
challenge, and then collects cookies or the JSON results of the provider's
stage requests.

## Modules

- `turnproxy.runstage` – the `Stage` enum (`policy_validate`,
  `provider_resolve`, `session_supervision`, `local_bind`, `turn_dial`,
  `turn_allocate`, `peer_setup`, `dtls_handshake`, `forwarding_loop`), the
  `StageError` exception, `wrap` to tag an error with a stage unless it
  already carries one, and `from_error` to read the stage back from an error,
  its causes or an exception group.
- `turnproxy.transport_types` – `ClientConfig` (with `replace`),
  `ClientHooks`, `TURNCredentials`, `RelayPacket`, the `TURNMode` and
  `PeerMode` enums and the `Runner` protocol (`async run()`).
- `turnproxy.forwarders` – `run_packet_forwarders` and
  `run_channel_forwarders`, which pump datagrams both ways between the local
  side and a relay connection (an object with `async read()` and
  `async write(data)`), plus `channel_to_relay`, `relay_to_handler`,
  `clone_addr` and `LastLocalPeer`, which remembers the most recent local
  sender so replies go back to it.
- `turnproxy.bindnet` – `BindNet`, `rewrite_bind_address`,
  `local_addr_for_network` and `is_socket_network`, for pinning dials and
  listens to a chosen local IP address.
- `turnproxy.turnbase` – `packet_listen_config`, `validate_ip_family` and
  `listen_turn_packet_socket`, which opens a bound UDP socket for talking to
  a TURN server and refuses a bind address whose family differs from the
  server's.
- `turnproxy.addressing` – `new_session_id`, `split_host_port`,
  `join_host_port` and `apply_turn_overrides`.
- `turnproxy.plan` – `SessionConfig`, `TransportMode`, `TransportPlan`,
  `SessionPlan`, `build_transport_plan` and `build_session_plan`. `auto` mode
  resolves to UDP; a bind interface must be a literal IP address; the default
  restart policy is one restart after 0.2 seconds.
- `turnproxy.router` – `LocalRouter`, which reads the local endpoint, queues
  each datagram on the next ready worker (dropping it when there is none or
  the queue is full) and delivers relay replies.
- `turnproxy.supervisor` – `run_supervised_session`, `stage_string` and
  `Observer`, which records session starts, failures, transport failures,
  active worker count and recent events, and logs each event.
- `turnproxy.stages` – `Cookie`, `BrowserStageRequest`,
  `BrowserStageObservation`, `BrowserStageResult` and `BrowserContinuation`.
- `turnproxy.matching` – `match_observation`, `extract_observed_form_values`,
  `sorted_keys` and `unique_sorted`.
- `turnproxy.launch` – `chromium_launch_args`, `should_launch_headless`,
  `parse_truthy_env`, `startup_log_suffix`, `resolve_browser_path`,
  `submit_stage_request_script`, `reserve_tcp_port` and `wait_for_devtools`.
- `turnproxy.continuation` – `start_continuation`, `ContinuationSession`
  (`complete`, `close`, usable with `async with`), `continuation_prompt`,
  `continuation_open_url`, `continuation_cookie_urls` and
  `continuation_cookies`.
- `turnproxy.chromium` – `new_chromium_session`, `ChromiumSession` (`open`,
  `cookies`, `execute_stage_requests`, `observe_stage_results`, `close`) and
  `decode_observed_body`.

## Examples

Overriding the TURN server port handed out by a provider:

```python
from turnproxy.addressing import apply_turn_overrides

apply_turn_overrides("203.0.113.5:3478", "", "5349")
# '203.0.113.5:5349'
```

Attaching a stage to a failure and reading it back:

```python
from turnproxy.runstage import Stage, from_error, wrap

err = wrap(Stage.TURN_ALLOCATE, OSError("allocation refused"))
from_error(err)
# <Stage.TURN_ALLOCATE: 'turn_allocate'>
```

Planning a session:

```python
from turnproxy.plan import SessionConfig, build_session_plan

plan = build_session_plan(SessionConfig(connections=2, mode="auto", use_dtls=False))
plan.transport.turn_mode, plan.transport.peer_mode, plan.max_worker_restarts
# (<TURNMode.UDP: 'udp'>, <PeerMode.PLAIN: 'plain'>, 1)
```

Running supervised workers: `run_supervised_session(local_endpoint,
base_config, new_runner, plan, observer)` takes a local endpoint with
`async recvfrom()` and `sendto(data, addr)`, and a `new_runner` callable that
turns each worker's `ClientConfig` into a `Runner`. A runner calls
`config.hooks.on_ready()` once it can carry traffic, then forwards between
`config.outbound` and `config.inbound`, for example with
`run_channel_forwarders`.

Completing a browser challenge:

```python
from turnproxy.continuation import start_continuation

async def solve(challenge):
    async with await start_continuation(challenge) as continuation:
        input("finish the challenge in the browser, then press Enter")
        return await continuation.complete()
```

A challenge offers `prompt()` and `open_url()`, and may also offer
`cookie_urls()`, `browser_stage_requests()` or `browser_stage_observations()`.
With observations, `complete()` returns the responses the page itself sent;
with stage requests, it submits them from inside the page; otherwise it
returns the browser's cookies for the cookie URLs.

## Browser settings

Chromium runs headless when `VK_PROVIDER_BROWSER_HEADLESS` is set to a true
value (`1`, `true`, `yes`, `on`), or, when that variable is unset or empty,
when `CI`, `GITHUB_ACTIONS` or `ACT` is true. Otherwise it opens a normal
window so the operator can complete the challenge. The executable is taken
from `VK_PROVIDER_BROWSER`, or found on `PATH` as `chromium`,
`chromium-browser`, `google-chrome` or `google-chrome-stable`. Each session
uses a fresh temporary profile that is removed on close.

## What the package does not do

- It has no TURN client and no DTLS: it does not allocate relays or perform
  handshakes. A `Runner` that does so must be supplied to
  `run_supervised_session`.
- It does not resolve credentials from provider links and has no provider
  implementations; `continuation` works with any challenge object of the
  shape described above.
- It has no command-line program and no configuration file format.
- `Observer` keeps its counters in memory and writes to `logging`; it does
  not export metrics.

## Requirements

Python 3.11 or later. The DevTools connection uses `websockets`; browser
challenges need a Chromium-based browser installed locally. Tests use
`pytest` and `pytest-asyncio` (the `test` extra).