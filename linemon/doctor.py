from __future__ import annotations

from .controller import McProtocolLineController
from .logging import JsonLogger


def build_mc_controller(args, logger: JsonLogger, **kwargs) -> McProtocolLineController:
    return McProtocolLineController(
        logger=logger,
        host=args.host,
        port=args.port,
        address=args.address,
        ascii_mode=args.ascii,
        frame=args.frame,
        plc_type=args.plc_type,
        network=args.network,
        station=args.station,
        timeout_s=args.timeout,
        **kwargs,
    )


def run_doctor(args, controller=None, out=print) -> int:
    """Check controller reachability and one MC protocol read. Never writes to the device.

    Returns 0 when every check passed, 1 otherwise."""
    out("Doctor Mode (safe):")
    out("  - No line command is sent.")
    out("  - Reads the configured device word once.")
    out()

    if args.controller != "mc" and controller is None:
        out("  OK: controller mode is 'sim'; nothing to probe.")
        return 0

    if controller is None:
        controller = build_mc_controller(args, JsonLogger(enable_json=False, min_level="error"))

    d = controller.describe()
    out(f"  target: {d['host']}:{d['port']} address={d['address']} mode={d['mode']} frame={d['frame']} "
        f"plc_type={d['plc_type']} network={d['network']} station={d['station']}")

    failures = 0
    probe = controller.probe_port()
    if probe["ok"]:
        out(f"  OK: {probe['message']} latency_ms={probe.get('latency_ms')}")
    else:
        failures += 1
        out(f"  WARN: {probe['message']}")
        out("  Skipping MC protocol read (port unreachable).")
        return 1

    result = controller.test_connection()
    if result["ok"]:
        out(f"  OK: {result['message']} ({result.get('frame')})")
    else:
        failures += 1
        out(f"  WARN: {result['message']}")
        out("  Check frame (3E/4E), ascii/binary mode, network and station numbers.")

    return 0 if failures == 0 else 1
