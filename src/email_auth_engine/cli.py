import argparse
import asyncio
import json
import sys

from . import keys
from .config import configure_logging, get_settings
from .core import AuthenticationEngine, generate_report, human_report, verdict_report
from .dkim import build_dkim_record
from .dmarc import build_dmarc_record
from .errors import EngineError
from .keys import InMemoryKeyStore
from .models import (
    AlignmentMode, Canonicalization, DkimKeyConfig, DmarcPolicy, MechanismKind, PolicyAction, Qualifier, SpfMechanism,
    SpfPolicy,
)
from .spf import build_spf_record


def _read(path):
    if path == "-":
        return sys.stdin.buffer.read()
    with open(path, "rb") as f:
        return f.read()


def _emit(args, result, text):
    if args.json_out:
        with open(args.json_out, "w", encoding="utf-8") as f:
            json.dump(result, f, indent=2)
        if not args.quiet:
            print(f"Wrote JSON summary to {args.json_out}")

    if not args.quiet:
        print(text)
    else:
        print(json.dumps(result))


def cmd_verify(args):
    raw = _read(args.message)
    engine = AuthenticationEngine()
    verdict = asyncio.run(engine.verify_email(raw, args.ip, mail_from=args.mail_from, helo=args.helo))
    _emit(args, verdict.model_dump(mode="json"), verdict_report(verdict))
    return 0 if verdict.authenticated else 1


def cmd_report(args):
    result = asyncio.run(generate_report(args.domain.strip(), selectors=args.selector or None))
    _emit(args, result, human_report(result))
    return 0


def cmd_keygen(args):
    store = InMemoryKeyStore()
    config = store.create(args.domain, selector=args.selector, key_size=args.bits, test_mode=args.test_mode)
    if args.private_out:
        with open(args.private_out, "w", encoding="utf-8") as f:
            f.write(config.private_key)
    result = {
        "domain": config.domain,
        "selector": config.selector,
        "dns_name": keys.dns_record_name(config.selector, config.domain),
        "dns_value": build_dkim_record(config.public_key, test_mode=config.test_mode),
        "fingerprint": keys.fingerprint(config.public_key),
        "public_key": config.public_key,
    }
    if not args.private_out:
        result["private_key"] = config.private_key
    text = f"{result['dns_name']} IN TXT \"{result['dns_value']}\"\nfingerprint: {result['fingerprint']}"
    if args.private_out:
        text += f"\nprivate key written to {args.private_out}"
    _emit(args, result, text)
    return 0


def _canonicalization(value):
    header, _, body = value.lower().partition("/")
    return Canonicalization(header), Canonicalization(body or "simple")


def cmd_sign(args):
    with open(args.key, "r", encoding="utf-8") as f:
        private_key = f.read()
    config = DkimKeyConfig(
        domain=args.domain,
        selector=args.selector,
        private_key=private_key,
        canonicalization=_canonicalization(args.canonicalization),
        signed_headers=args.headers or get_settings().dkim_signed_headers,
    )
    engine = AuthenticationEngine(key_store=InMemoryKeyStore((config,)))
    signed = engine.sign_email(_read(args.message), domain=config.domain)
    sys.stdout.buffer.write(signed)
    return 0


def _mechanism(text, kind):
    qualifier = Qualifier.PASS
    if text and text[0] in "+-~?":
        qualifier, text = Qualifier(text[0]), text[1:]
    return SpfMechanism(kind=kind, qualifier=qualifier, target=text or None)


def cmd_record(args):
    if args.protocol == "spf":
        mechanisms = [_mechanism(v, MechanismKind.IP4) for v in args.ip4]
        mechanisms += [_mechanism(v, MechanismKind.IP6) for v in args.ip6]
        mechanisms += [_mechanism(v, MechanismKind.A) for v in args.a]
        mechanisms += [_mechanism(v, MechanismKind.MX) for v in args.mx]
        mechanisms += [_mechanism(v, MechanismKind.INCLUDE) for v in args.include]
        policy = SpfPolicy(domain=args.domain, mechanisms=mechanisms, redirect=args.redirect,
                           all_qualifier=Qualifier(args.all))
        name, value = args.domain, build_spf_record(policy)
    elif args.protocol == "dmarc":
        policy = DmarcPolicy(
            domain=args.domain,
            policy=PolicyAction(args.policy),
            subdomain_policy=PolicyAction(args.subdomain_policy) if args.subdomain_policy else None,
            dkim_alignment=AlignmentMode(args.adkim),
            spf_alignment=AlignmentMode(args.aspf),
            percentage=args.pct,
            aggregate_report_uri=args.rua,
            failure_report_uri=args.ruf,
        )
        name, value = f"_dmarc.{args.domain}", build_dmarc_record(policy)
    else:
        with open(args.public_key, "r", encoding="utf-8") as f:
            public_key = f.read()
        name = keys.dns_record_name(args.selector, args.domain)
        value = build_dkim_record(public_key, test_mode=args.test_mode)
    _emit(args, {"type": "TXT", "name": name, "value": value}, f"{name} IN TXT \"{value}\"")
    return 0


def build_parser():
    parser = argparse.ArgumentParser(description="Email authentication (SPF/DKIM/DMARC) engine")
    parser.add_argument("--json-out", help="Write JSON summary to this file")
    parser.add_argument("--quiet", action="store_true", help="Only output JSON or minimal info")
    parser.add_argument("--log-level", default=None, help="Logging level (default from EMAIL_AUTH_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("verify", help="Verify SPF, DKIM and DMARC for a raw message")
    p.add_argument("message", help="path to an RFC 5322 message, or - for stdin")
    p.add_argument("--ip", required=True, help="connecting client IP address")
    p.add_argument("--mail-from", help="envelope sender (default: Return-Path header)")
    p.add_argument("--helo", help="HELO/EHLO name, used for null senders")
    p.set_defaults(func=cmd_verify)

    p = sub.add_parser("report", help="Audit the records a domain publishes")
    p.add_argument("domain", help="domain to check (e.g. example.com)")
    p.add_argument("--selector", action="append", help="DKIM selector to check (repeatable)")
    p.set_defaults(func=cmd_report)

    p = sub.add_parser("keygen", help="Generate a DKIM key pair and its DNS record")
    p.add_argument("domain")
    p.add_argument("--selector", help="selector name (default: generated)")
    p.add_argument("--bits", type=int, default=get_settings().dkim_key_size)
    p.add_argument("--test-mode", action="store_true", help="publish t=y")
    p.add_argument("--private-out", help="write the private key PEM to this file")
    p.set_defaults(func=cmd_keygen)

    p = sub.add_parser("sign", help="DKIM-sign a message and write it to stdout")
    p.add_argument("message", help="path to an RFC 5322 message, or - for stdin")
    p.add_argument("--domain", required=True)
    p.add_argument("--selector", required=True)
    p.add_argument("--key", required=True, help="private key PEM file")
    p.add_argument("--canonicalization", default="relaxed/relaxed")
    p.add_argument("--headers", help="comma-separated headers to sign")
    p.set_defaults(func=cmd_sign)

    p = sub.add_parser("record", help="Render an SPF, DMARC or DKIM TXT record")
    p.add_argument("protocol", choices=["spf", "dmarc", "dkim"])
    p.add_argument("domain")
    p.add_argument("--ip4", action="append", default=[])
    p.add_argument("--ip6", action="append", default=[])
    p.add_argument("--a", action="append", default=[], help="a target ('' for the domain itself)")
    p.add_argument("--mx", action="append", default=[], help="mx target ('' for the domain itself)")
    p.add_argument("--include", action="append", default=[])
    p.add_argument("--redirect")
    p.add_argument("--all", default="~", choices=[q.value for q in Qualifier])
    p.add_argument("--policy", default="none", choices=[a.value for a in PolicyAction])
    p.add_argument("--subdomain-policy", choices=[a.value for a in PolicyAction])
    p.add_argument("--adkim", default="r", choices=["r", "s"])
    p.add_argument("--aspf", default="r", choices=["r", "s"])
    p.add_argument("--pct", type=int, default=100)
    p.add_argument("--rua")
    p.add_argument("--ruf")
    p.add_argument("--selector", default="default")
    p.add_argument("--public-key", help="public key PEM file (dkim)")
    p.add_argument("--test-mode", action="store_true")
    p.set_defaults(func=cmd_record)
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    configure_logging(args.log_level or get_settings().log_level)

    if args.command == "record" and args.protocol == "dkim" and not args.public_key:
        print("Fatal error: record dkim needs --public-key", file=sys.stderr)
        sys.exit(2)
    try:
        code = args.func(args)
    except (EngineError, OSError, ValueError) as e:
        print(f"Fatal error: {e}", file=sys.stderr)
        sys.exit(2)
    sys.exit(code)


if __name__ == "__main__":
    main()
