"""Inspect and apply daemon profiles from the command line.

Demonstrates:
- Connecting through create_service() with environment/configure() defaults
- Waiting for Connected before sending
- Fire-and-forget requests with results read from the event queue
- Daemon pushes (battery, wake, timer tick) arriving between results
"""

import argparse
import logging
import sys

import pwtclient
from pwtclient import events
from pwtclient.errors import daemon_error_message

# -- Logging config --------------------------------------------------------


def configure_logging(trace: bool):
    console = logging.StreamHandler()
    console.setFormatter(logging.Formatter("%(asctime)s %(levelname)-5s %(name)s %(message)s"))

    logger = logging.getLogger("pwtclient")
    logger.addHandler(console)
    logger.setLevel(logging.INFO if trace else logging.WARNING)


# -- Helpers ---------------------------------------------------------------


def wait_for(service, event_type, timeout):
    """Return the first event of event_type, printing pushes and failures seen on the way."""
    for event in service.events(timeout=timeout):
        if isinstance(event, event_type):
            return event
        if isinstance(event, (events.CommandFailed, events.ServiceError)):
            print(f"failed: {event.error}", file=sys.stderr)
            return None
        if isinstance(event, events.BatteryStatusChanged):
            print(f"battery status changed, active profile: {event.name}")
    print(f"no {event_type.__name__} within {timeout}s", file=sys.stderr)
    return None


def describe_errors(errors):
    if not errors:
        return "ok"
    return "; ".join(daemon_error_message(e) for e in sorted(errors))


# -- Main ------------------------------------------------------------------


def parse_args():
    p = argparse.ArgumentParser(description="List or apply power-tuning profiles")
    p.add_argument("--host", default=None, help="daemon address (default: PWTCLIENT_HOST or 127.0.0.1)")
    p.add_argument("--port", type=int, default=None, help="daemon port (default: PWTCLIENT_PORT or 56000)")
    p.add_argument("--apply", metavar="NAME", help="apply the named profile")
    p.add_argument("--timeout", type=float, default=10.0, help="seconds to wait for each answer")
    p.add_argument("--trace", action="store_true", help="log every message sent and received")
    return p.parse_args()


def main():
    args = parse_args()
    configure_logging(args.trace)

    with pwtclient.create_service(args.host, args.port, trace=args.trace or None) as service:
        service.connect_to_daemon()
        connected = wait_for(service, events.Connected, args.timeout)
        if connected is None:
            return 1
        print(f"Connected to {connected.address}:{connected.port}")

        service.send_get_profile_list_request()
        listing = wait_for(service, events.ProfileListReceived, args.timeout)
        if listing is None:
            return 1
        for name in listing.names:
            print(f"  {name}")

        if args.apply:
            service.send_apply_profile_request(args.apply)
            applied = wait_for(service, events.ProfileApplied, args.timeout)
            if applied is None:
                return 1
            print(f"Applied {applied.name}: {describe_errors(applied.errors)}")

        service.disconnect_from_daemon()
    return 0


if __name__ == "__main__":
    sys.exit(main())
