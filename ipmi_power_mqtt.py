#!/usr/bin/env python3
"""Poll BMC DCMI power readings with ipmitool and publish them to MQTT."""

from __future__ import annotations

import argparse
import io
import json
import logging
import shutil
import subprocess
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Iterable, Mapping, Optional, Protocol, Sequence, Union

import paho.mqtt.client as mqtt


logger = logging.getLogger(__name__)

MEASUREMENT = "ipmi_power"
SAMPLE_PERIODS = ("5_sec", "15_sec", "30_sec", "1_min", "3_min", "7_min", "15_min", "30_min", "1_hour")
PRIVILEGE_LEVELS = ("CALLBACK", "USER", "OPERATOR", "ADMINISTRATOR")

Runner = Callable[[Sequence[str], float], bytes]


class IpmiError(Exception):
    """Base class for everything a poll can fail with."""


class ConfigurationError(IpmiError):
    pass


class ParseError(IpmiError):
    pass


class CommandError(IpmiError):
    """The subprocess timed out, exited non-zero or could not be started."""

    def __init__(self, reason: str, output: bytes = b"") -> None:
        super().__init__(reason)
        self.reason = reason
        self.output = output or b""


class FetchError(IpmiError):
    def __init__(self, command: Sequence[str], cause: Exception, output: bytes = b"") -> None:
        self.command = list(command)
        self.cause = cause
        self.output = output or b""
        super().__init__(
            f"failed to run command {' '.join(self.command)}: {cause} - "
            f"{self.output.decode('utf-8', errors='replace')}"
        )


class Accumulator(Protocol):
    """Receives finished records. Implementations must accept concurrent calls."""

    def add_fields(
        self,
        measurement: str,
        fields: Mapping[str, Any],
        tags: Optional[Mapping[str, str]],
        timestamp: datetime,
    ) -> None: ...

    def add_error(self, err: Exception) -> None: ...


@dataclass(frozen=True)
class Connection:
    username: str = ""
    password: str = ""
    protocol: str = ""
    address: str = ""
    privilege: str = ""

    @property
    def hostname(self) -> str:
        return self.address

    @classmethod
    def parse(cls, server: str, privilege: str = "") -> "Connection":
        """Parse `[username[:password]@][protocol[(address)]]`.

        Malformed strings never raise; whatever is missing stays empty and
        ipmitool gets to complain about it.
        """
        username = password = ""
        security, sep, rest = server.rpartition("@")
        if not sep:
            rest = server
        else:
            username, _, password = security.partition(":")

        protocol, paren, address = rest.partition("(")
        if paren:
            address = address.split(")", 1)[0]
        return cls(
            username=username,
            password=password,
            protocol=protocol.strip(),
            address=address.strip(),
            privilege=privilege,
        )

    def options(self) -> list[str]:
        opts = ["-I", self.protocol, "-H", self.address, "-U", self.username, "-P", self.password]
        if self.privilege:
            opts += ["-L", self.privilege]
        return opts


def normalize_name(label: str) -> str:
    """'PS1 Power In' -> 'ps1_power_in'."""
    return label.strip().lower().replace(" ", "_")


# ASCII only; \v, \x85 and friends are part of a token
_WHITESPACE = " \t\n\f\r"
_TO_SPACE = str.maketrans({c: " " for c in _WHITESPACE})


def parse_line(line: str) -> Optional[tuple[str, str, str]]:
    """Split `  <label>: <value> <unit> [anything]` into its three tokens.

    The line has to be indented. Returns None for anything else (headers,
    blank lines, `a | b` tables, `key: value` rows without a unit, unindented
    diagnostics such as `Error: 5 retries`).
    """
    if not line or line[0] not in _WHITESPACE:
        return None
    name, colon, rest = line.partition(":")
    if not colon or not rest or rest[0] not in _WHITESPACE:
        return None
    tokens = [t for t in rest.translate(_TO_SPACE).split(" ") if t]
    if len(tokens) < 2:
        return None
    return name.strip(), tokens[0], tokens[1]


def _to_float(token: str) -> Optional[float]:
    if "_" in token:
        return None
    try:
        return float(token)
    except ValueError:
        return None


def parse_output(
    acc: Accumulator,
    hostname: str,
    output: Union[bytes, Iterable[bytes]],
    measured_at: datetime,
) -> None:
    """Turn `ipmitool dcmi power reading` output into one ipmi_power record.

    `output` is either the captured bytes or any iterable of byte lines (an
    open pipe, a file). Each matching line contributes `fields[name]` (float)
    and `fields[name + "_unit"]`. Lines whose value is not a number, such as
    `IPMI timestamp: Wed Sep  5 ...`, are dropped without a word. Bytes that
    are not UTF-8 are replaced, never fatal.

    The record is emitted even when reading the stream fails part way;
    `ParseError` is raised afterwards.
    """
    # each line will look something like
    #     Instantaneous power reading:                   220 Watts
    if isinstance(output, (bytes, bytearray)):
        output = io.BytesIO(output)

    fields: dict[str, Any] = {}
    scan_error: Optional[OSError] = None
    try:
        for raw in output:
            parsed = parse_line(raw.decode("utf-8", errors="replace").rstrip("\n").rstrip("\r"))
            if parsed is None:
                continue
            raw_name, raw_value, unit = parsed
            value = _to_float(raw_value)
            if value is None:
                continue
            key = normalize_name(raw_name)
            fields[key] = value
            fields[key + "_unit"] = unit
    except OSError as exc:
        scan_error = exc

    tags = {"server": hostname} if hostname else None
    acc.add_fields(MEASUREMENT, fields, tags, measured_at)

    if scan_error is not None:
        raise ParseError(f"failed to read ipmitool output for {hostname or 'localhost'}: {scan_error}") from scan_error


def run_command(argv: Sequence[str], timeout: float) -> bytes:
    """Run argv with stdout and stderr combined; the child is killed on timeout."""
    try:
        proc = subprocess.run(
            list(argv),
            check=True,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            timeout=timeout,
        )
    except subprocess.TimeoutExpired as exc:
        raise CommandError(f"command timed out after {timeout:g}s", exc.output) from exc
    except subprocess.CalledProcessError as exc:
        raise CommandError(f"exit status {exc.returncode}", exc.output) from exc
    except OSError as exc:
        raise CommandError(str(exc)) from exc
    return proc.stdout


@dataclass
class IpmiPower:
    """DCMI power reading poller for the local BMC or a list of remote ones."""

    path: str
    servers: list[str] = field(default_factory=list)
    privilege: str = ""
    use_sudo: bool = False
    sample_period: str = ""
    timeout: float = 20.0
    runner: Runner = run_command

    def command(self, conn: Optional[Connection] = None) -> list[str]:
        opts = conn.options() if conn is not None else []
        opts += ["dcmi", "power", "reading"]
        if self.sample_period:
            opts.append(self.sample_period)

        if self.use_sudo:
            # -n: never prompt for a password
            return ["sudo", "-n", self.path, *opts]
        return [self.path, *opts]

    def fetch(self, acc: Accumulator, server: str = "") -> None:
        conn = Connection.parse(server, self.privilege) if server else None
        hostname = conn.hostname if conn is not None else ""
        cmd = self.command(conn)
        logger.debug("Running %s", " ".join(cmd))
        try:
            out = self.runner(cmd, self.timeout)
        except CommandError as exc:
            raise FetchError(cmd, exc, exc.output) from exc
        measured_at = datetime.now(timezone.utc)
        parse_output(acc, hostname, out, measured_at)

    def gather(self, acc: Accumulator) -> None:
        if not self.path:
            raise ConfigurationError(
                "ipmitool not found: verify that ipmitool is installed and that ipmitool is in your PATH"
            )

        if not self.servers:
            self.fetch(acc)
            return

        with ThreadPoolExecutor(max_workers=len(self.servers)) as executor:
            futures = [executor.submit(self._fetch_reporting, acc, server) for server in self.servers]
            for future in as_completed(futures):
                future.result()

    def _fetch_reporting(self, acc: Accumulator, server: str) -> None:
        try:
            self.fetch(acc, server)
        except IpmiError as exc:
            acc.add_error(exc)


def unit_metadata(unit: str) -> dict[str, str]:
    u = unit.lower()
    if "watts" in u or u == "w":
        return {"unit_of_measurement": "W", "device_class": "power", "state_class": "measurement"}
    if "seconds" in u or u == "s":
        return {"unit_of_measurement": "s", "device_class": "duration", "state_class": "measurement"}
    if "amps" in u or u == "a":
        return {"unit_of_measurement": "A", "device_class": "current", "state_class": "measurement"}
    if "volts" in u or u == "v":
        return {"unit_of_measurement": "V", "device_class": "voltage", "state_class": "measurement"}
    return {"unit_of_measurement": unit, "state_class": "measurement"} if unit else {"state_class": "measurement"}


def _slug(name: str) -> str:
    return "".join(c if c.isalnum() or c == "_" else "_" for c in name.lower()).strip("_")


class MqttAccumulator:
    """Publish records as JSON and announce fields via Home Assistant discovery."""

    def __init__(self, client: mqtt.Client, prefix: str = "homeassistant", node_id: str = "ipmi") -> None:
        self.client = client
        self.prefix = prefix
        self.node_id = node_id
        self._announced: set[tuple[str, str]] = set()
        self._lock = threading.Lock()

    def _node(self, tags: Optional[Mapping[str, str]]) -> str:
        server = (tags or {}).get("server")
        return _slug(server) if server else self.node_id

    def add_fields(
        self,
        measurement: str,
        fields: Mapping[str, Any],
        tags: Optional[Mapping[str, str]],
        timestamp: datetime,
    ) -> None:
        node = self._node(tags)
        state_topic = f"{self.prefix}/sensor/{node}/{measurement}/state"

        for name, value in fields.items():
            if name.endswith("_unit") or isinstance(value, str):
                continue
            self._announce(node, measurement, name, str(fields.get(name + "_unit", "")), state_topic)

        payload = {
            "measurement": measurement,
            "fields": dict(fields),
            "tags": dict(tags or {}),
            "timestamp": timestamp.isoformat(),
        }
        self.client.publish(state_topic, json.dumps(payload), qos=1, retain=True)

    def _announce(self, node: str, measurement: str, name: str, unit: str, state_topic: str) -> None:
        with self._lock:
            if (node, name) in self._announced:
                return
            self._announced.add((node, name))

        object_id = f"{node}_{measurement}_{name}"
        config_topic = f"{self.prefix}/sensor/{node}/{object_id}/config"
        payload = {
            "name": f"IPMI {name.replace('_', ' ')}",
            "uniq_id": object_id,
            "stat_t": state_topic,
            "val_tpl": f"{{{{ value_json.fields['{name}'] }}}}",
            "dev": {
                "ids": [node],
                "name": f"IPMI {node}",
                "mf": "IPMI",
                "mdl": "BMC",
            },
        }
        payload.update(unit_metadata(unit))
        self.client.publish(config_topic, json.dumps(payload), qos=1, retain=True)

    def add_error(self, err: Exception) -> None:
        logger.error("%s", err)


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description=__doc__)
    p.add_argument("--mqtt-host", required=True, help="MQTT broker host")
    p.add_argument("--mqtt-port", type=int, default=1883, help="MQTT broker port")
    p.add_argument("--mqtt-username", help="MQTT username")
    p.add_argument("--mqtt-password", help="MQTT password")
    p.add_argument("--topic-prefix", default="homeassistant", help="Home Assistant discovery prefix")
    p.add_argument("--node-id", default="ipmi", help="Node identifier used for the local BMC")
    p.add_argument(
        "--path",
        default=shutil.which("ipmitool") or "",
        help="Path to the ipmitool executable (default: looked up in PATH)",
    )
    p.add_argument(
        "--use-sudo",
        action="store_true",
        help="Run ipmitool through sudo; sudo must allow it without a password",
    )
    p.add_argument("--privilege", default="", help=f"Force session privilege level ({'/'.join(PRIVILEGE_LEVELS)})")
    p.add_argument(
        "--server",
        dest="servers",
        action="append",
        default=[],
        help="Remote BMC as [username[:password]@][protocol[(address)]], e.g. root:passwd@lan(127.0.0.1). "
        "Repeat for several; without any the local BMC is queried",
    )
    p.add_argument("--timeout", type=float, default=20.0, help="Seconds to wait for ipmitool to complete")
    p.add_argument("--sample-period", default="", help=f"DCMI sample period ({'/'.join(SAMPLE_PERIODS)})")
    p.add_argument("--interval", type=int, default=30, help="Polling interval in seconds")
    p.add_argument("--once", action="store_true", help="Poll once and exit")
    p.add_argument("--log-level", default="INFO", help="Logging level")
    return p.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = parse_args(argv)
    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s  %(levelname)s %(message)s",
    )

    if args.sample_period and args.sample_period not in SAMPLE_PERIODS:
        logger.warning("Unknown sample period %r, passing it to ipmitool as is", args.sample_period)

    poller = IpmiPower(
        path=args.path,
        servers=args.servers,
        privilege=args.privilege,
        use_sudo=args.use_sudo,
        sample_period=args.sample_period,
        timeout=args.timeout,
    )

    client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
    if args.mqtt_username:
        client.username_pw_set(args.mqtt_username, args.mqtt_password)

    client.connect(args.mqtt_host, args.mqtt_port, keepalive=60)
    client.loop_start()
    acc = MqttAccumulator(client, prefix=args.topic_prefix, node_id=args.node_id)

    try:
        while True:
            try:
                poller.gather(acc)
            except IpmiError as exc:
                logger.error("Poll failed: %s", exc)
                if args.once:
                    return 1

            if args.once:
                return 0
            time.sleep(args.interval)
    finally:
        client.loop_stop()
        client.disconnect()


if __name__ == "__main__":
    raise SystemExit(main())
