from __future__ import annotations

import argparse
import getpass
import json
import logging
import stat
import sys
from datetime import datetime
from importlib.resources import files
from pathlib import Path


def _check_keyring_available() -> bool:
    """Check if keyring is installed with a usable backend."""
    try:
        import keyring
        from keyring.backends.fail import Keyring as FailKeyring

        return not isinstance(keyring.get_keyring(), FailKeyring)
    except Exception:
        return False


def _upsert_env_var(env_file: Path, key: str, value: str) -> None:
    """Set or update a key=value pair in a .env file, creating it if needed."""
    from dotenv import set_key

    env_file.parent.mkdir(parents=True, exist_ok=True)
    if not env_file.exists():
        env_file.touch()
    set_key(str(env_file), key, value)


def _remove_env_var(env_file: Path, key: str) -> None:
    from dotenv import unset_key

    if env_file.exists():
        unset_key(str(env_file), key)


def _warn_open_permissions(env_file: Path) -> None:
    """Warn if .env file has group/other read permissions (Unix only)."""
    try:
        mode = env_file.stat().st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            print(f"\n  WARNING: {env_file} is readable by other users.")
            print("  Consider: chmod 600", env_file)
    except OSError:
        pass


def _store_secret(config_dir: Path, env_key: str, keyring_user: str, secret: str) -> None:
    """Ask where to keep a secret: OS keyring, the config .env, or nowhere."""
    from fiskal.config import _delete_keyring_password, _set_keyring_password

    env_file = config_dir / ".env"
    keyring_ok = _check_keyring_available()
    options: list[tuple[str, str]] = []
    if keyring_ok:
        options.append(("1", "System keyring (recommended)"))
    options.append(("2", ".env file in the config directory"))
    options.append(("3", "Do not store (set it yourself)"))

    print()
    print("Where should the password be stored?")
    for num, label in options:
        print(f"  {num}. {label}")
    valid_choices = {num for num, _ in options}
    choice = ""
    while choice not in valid_choices:
        choice = input(f"Choice [{'/'.join(sorted(valid_choices))}]: ").strip()

    if choice == "1" and _set_keyring_password(keyring_user, secret):
        print("  Stored in the system keyring.")
        _remove_env_var(env_file, env_key)
    elif choice in ("1", "2"):
        if choice == "1":
            print("  ERROR: keyring write failed, falling back to .env.")
        _upsert_env_var(env_file, env_key, secret)
        print(f"  Saved to {env_file}")
        _warn_open_permissions(env_file)
        _delete_keyring_password(keyring_user)
    else:
        _remove_env_var(env_file, env_key)
        _delete_keyring_password(keyring_user)
        print(f"  Not stored. Set {env_key} in your shell or .env before fiscalizing.")


def _setup_certificate(config_dir: Path) -> bool:
    """Interactive FINA certificate setup. Returns True if a certificate was validated."""
    print()
    print("FINA application certificate")
    print("────────────────────────────")
    while True:
        pfx_path = input("Path to .pfx/.p12 certificate (empty to skip): ").strip()
        if not pfx_path:
            print("  Certificate setup skipped.")
            return False
        if Path(pfx_path).is_file():
            break
        print(f"  File not found: {pfx_path}")

    pfx_password = getpass.getpass("Certificate password: ")

    from fiskal.services.exceptions import ConfigurationError
    from fiskal.utils.certificate import validate_certificate

    try:
        info = validate_certificate(pfx_path, pfx_password)
    except ConfigurationError as e:
        print(f"  ERROR: {e}")
        return False

    print(f"  Subject:     {info['subject']}")
    print(f"  Valid until: {info['not_after']}")
    print(f"  OIB:         {info['oib'] or 'not found in subject'}")
    if not info["valid"]:
        print("  WARNING: certificate is outside its validity period")

    from fiskal.config import KEYRING_CERT_PASSWORD

    _upsert_env_var(config_dir / ".env", "FISKAL_CERT_PATH", pfx_path)
    _store_secret(config_dir, "FISKAL_CERT_PASSWORD", KEYRING_CERT_PASSWORD, pfx_password)
    return True


def _init_config() -> None:
    """Copy bundled templates to the user's config/data directories."""
    from fiskal.config import get_config_dir, get_data_dir

    config_dir = get_config_dir()
    data_dir = get_data_dir()
    templates = files("fiskal") / "templates"

    (config_dir / "issuers").mkdir(parents=True, exist_ok=True)
    data_dir.mkdir(parents=True, exist_ok=True)

    copied = 0
    for rel, dest in (
        ("issuer.yaml.example", config_dir / "issuers" / "default.yaml.example"),
        ("invoices.json.example", data_dir / "invoices.json.example"),
    ):
        if dest.exists():
            print(f"  exists:  {dest}")
            continue
        with (templates / rel).open("rb") as f:
            dest.write_bytes(f.read())
        print(f"  created: {dest}")
        copied += 1

    print()
    print(f"Config: {config_dir}")
    print(f"Data:   {data_dir}")

    try:
        answer = input("\nConfigure the FINA certificate now? [Y/n]: ").strip().lower()
        if answer in ("", "y", "yes", "d", "da"):
            _setup_certificate(config_dir)
    except (EOFError, KeyboardInterrupt):
        print()

    if copied:
        print()
        print("Next steps:")
        print(f"  1. cp {config_dir / 'issuers' / 'default.yaml.example'} {config_dir / 'issuers' / 'default.yaml'}")
        print("  2. Fill in your OIB, address and protocol settings")
        print("  3. fiskal import invoices.json && fiskal pending")


def _preflight(issuer_slug: str) -> bool:
    """Verify the issuer profile exists before running a command that needs it."""
    from fiskal.config import get_config_dir, get_data_dir

    get_data_dir().mkdir(parents=True, exist_ok=True)
    path = get_config_dir() / "issuers" / f"{issuer_slug}.yaml"
    if not path.is_file():
        print(f"Error: issuer profile not found: {path}")
        print("Run 'fiskal init' and create the issuer profile.")
        return False
    return True


def _default_method(issuer) -> str:
    from fiskal.models.outcome import METHOD_ERACUN, METHOD_FINA

    if issuer.eracun_enabled and not issuer.fina_enabled:
        return METHOD_ERACUN
    return METHOD_FINA


def _print_result(result) -> None:
    mark = "OK " if result.success else "ERR"
    label = result.invoice_number or result.invoice_id
    print(f"[{mark}] {label}: {result.status} - {result.message}")
    if result.jir:
        print(f"      JIR: {result.jir}")
    if result.zki:
        print(f"      ZKI: {result.zki}")
    if result.electronic_id:
        print(f"      Electronic ID: {result.electronic_id} ({result.remote_status})")


def _print_summary(summary) -> None:
    for result in summary.results:
        _print_result(result)
    print()
    print(
        f"Total {summary.total}: {summary.success_count} fiscalized, "
        f"{summary.error_count} errors, {summary.too_old_count} too old, "
        f"{summary.skipped_count} skipped"
    )


def _cmd_fiscalize(args, issuer, transport) -> int:
    from fiskal.services import fiscalization
    from fiskal.services.exceptions import EligibilityError

    method = args.method or _default_method(issuer)
    if args.dry_run:
        path = fiscalization.dry_run(args.invoice_id, method, issuer=issuer)
        print(f"Saved without sending: {path}")
        return 0
    try:
        result = fiscalization.fiscalize_invoice(args.invoice_id, method, issuer=issuer, transport=transport)
    except EligibilityError as exc:
        print(f"Not fiscalized: {exc.message}")
        return 1
    _print_result(result)
    return 0 if result.success else 1


def _cmd_batch(args, issuer, transport) -> int:
    from fiskal.services import fiscalization

    method = args.method or _default_method(issuer)
    if args.command == "pending":
        summary = fiscalization.fiscalize_pending(method, issuer=issuer, transport=transport)
    else:
        summary = fiscalization.fiscalize_batch(args.invoice_ids, method, issuer=issuer, transport=transport)
    _print_summary(summary)
    return 0 if summary.error_count == 0 else 1


def _parse_cli_datetime(value: str) -> datetime:
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid date: {value!r}") from None


def _cmd_outbox(args, issuer, transport) -> int:
    from fiskal.models.outbox import OutboxFilter
    from fiskal.services import eracun_client

    outbox_filter = OutboxFilter(
        electronic_id=args.electronic_id,
        status_id=args.status_id,
        invoice_year=args.year,
        invoice_number=args.number,
        date_from=args.date_from,
        date_to=args.date_to,
    )
    headers = eracun_client.query_outbox(issuer, outbox_filter, transport)
    for h in headers:
        print(
            f"{h.electronic_id:>12}  {h.document_nr or '-':<20} "
            f"{h.status_name or '-':<14} {h.recipient_business_name or ''}"
        )
    print(f"\n{len(headers)} document(s)")
    return 0


def _cmd_sync(args, issuer, transport) -> int:
    from fiskal.services import fiscalization

    summary = fiscalization.sync_outbox(issuer=issuer, transport=transport)
    for invoice_id, (old, new) in summary.changes.items():
        print(f"  {invoice_id}: {old or '-'} -> {new}")
    print(f"Checked {summary.checked}, updated {summary.updated}")
    return 0


def _cmd_zki(args, issuer, transport) -> int:
    from fiskal.services import fiscalization
    from fiskal.utils import registry

    record = registry.get_invoice(args.invoice_id)
    computed = fiscalization.security_code(args.invoice_id, issuer, args.oib)
    print(f"Computed ZKI: {computed}")
    stored = record.get("zki")
    if stored:
        print(f"Stored ZKI:   {stored} ({'match' if stored == computed else 'MISMATCH'})")
    return 0


def _cmd_ping(args, issuer, transport) -> int:
    from fiskal.services import eracun_client

    ok = eracun_client.ping(issuer, transport)
    print("moj-eRačun: reachable" if ok else "moj-eRačun: unexpected answer")
    return 0 if ok else 1


def _cmd_download(args, issuer, transport) -> int:
    from fiskal.services import eracun_client

    xml = eracun_client.download_document(args.electronic_id, issuer, transport)
    if args.output:
        Path(args.output).write_text(xml, encoding="utf-8")
        print(f"Saved: {args.output}")
    else:
        print(xml)
    return 0


def _cmd_status(args, issuer, transport) -> int:
    from fiskal.utils import registry
    from fiskal.utils.formatters import format_eur

    entries = registry.list_invoices(status=args.status, method=args.method)
    for e in entries:
        print(
            f"{e['id']:<12} {e.get('number', ''):<16} {format_eur(e.get('total', 0)):>14}  "
            f"{e.get('status', ''):<13} {e.get('method') or '-':<11} {e.get('message') or ''}"
        )
    print(f"\n{len(entries)} invoice(s)")
    return 0


def _classify_items(record: dict) -> None:
    """Fill KPD code, tax rate and category on lines imported without them."""
    from fiskal.utils import kpd

    for item in record.get("items") or []:
        description = item.get("description")
        if not item.get("kpd_code"):
            item["kpd_code"] = kpd.kpd_code_for(description)
        if item.get("tax_rate") in (None, ""):
            item["tax_rate"] = str(kpd.default_tax_rate_for(description))
        if not item.get("tax_category"):
            item["tax_category"] = kpd.tax_category_code(item["tax_rate"])


def _cmd_import(args, issuer, transport) -> int:
    from fiskal.utils import registry

    records = json.loads(Path(args.file).read_text())
    if isinstance(records, dict):
        records = records.get("invoices", [])
    known = {str(e["id"]) for e in registry.list_invoices()}
    added = 0
    for record in records:
        _classify_items(record)
        registry.add_invoice(record)
        if str(record["id"]) not in known:
            known.add(str(record["id"]))
            added += 1
    print(f"Imported {added} of {len(records)} invoice(s)")
    return 0


def _cmd_remove(args, issuer, transport) -> int:
    from fiskal.services.exceptions import AlreadyFiscalizedError
    from fiskal.utils import registry

    try:
        removed = registry.remove_invoice(args.invoice_id)
    except AlreadyFiscalizedError as exc:
        print(f"Error: {exc.message}")
        return 1
    print("Removed" if removed else "Not found")
    return 0 if removed else 1


def _build_parser() -> argparse.ArgumentParser:
    from fiskal.models.outcome import METHODS
    from fiskal.utils.validators import validate_oib

    parser = argparse.ArgumentParser(
        prog="fiskal", description="Croatian invoice fiscalization (FINA CIS, moj-eRačun)"
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="debug logging")
    parser.add_argument("--issuer", default="default", help="issuer profile (config/issuers/<name>.yaml)")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init", help="create config and data directories")

    p = sub.add_parser("fiscalize", help="fiscalize one invoice")
    p.add_argument("invoice_id")
    p.add_argument("--method", choices=METHODS)
    p.add_argument("--dry-run", action="store_true", help="build and save the document without sending")
    p.set_defaults(handler=_cmd_fiscalize)

    p = sub.add_parser("batch", help="fiscalize several invoices")
    p.add_argument("invoice_ids", nargs="+")
    p.add_argument("--method", choices=METHODS)
    p.set_defaults(handler=_cmd_batch)

    p = sub.add_parser("pending", help="fiscalize every not_required invoice")
    p.add_argument("--method", choices=METHODS)
    p.set_defaults(handler=_cmd_batch)

    p = sub.add_parser("status", help="list stored invoices")
    p.add_argument("--status")
    p.add_argument("--method", choices=METHODS)
    p.set_defaults(handler=_cmd_status)

    p = sub.add_parser("outbox", help="query the moj-eRačun outbox")
    p.add_argument("--electronic-id", type=int)
    p.add_argument("--status-id", type=int)
    p.add_argument("--year", type=int)
    p.add_argument("--number")
    p.add_argument("--from", dest="date_from", type=_parse_cli_datetime)
    p.add_argument("--to", dest="date_to", type=_parse_cli_datetime)
    p.set_defaults(handler=_cmd_outbox)

    p = sub.add_parser("sync", help="refresh moj-eRačun statuses from the outbox")
    p.set_defaults(handler=_cmd_sync)

    p = sub.add_parser("zki", help="recompute an invoice's ZKI")
    p.add_argument("invoice_id")
    p.add_argument("--oib", type=validate_oib, help="OIB to compute with (default: issuer fiscal OIB)")
    p.set_defaults(handler=_cmd_zki)

    p = sub.add_parser("ping", help="check moj-eRačun connectivity")
    p.set_defaults(handler=_cmd_ping)

    p = sub.add_parser("download", help="fetch a sent document from moj-eRačun")
    p.add_argument("electronic_id")
    p.add_argument("-o", "--output", help="write the XML to this file")
    p.set_defaults(handler=_cmd_download)

    p = sub.add_parser("import", help="add invoices from a JSON file")
    p.add_argument("file")
    p.set_defaults(handler=_cmd_import)

    p = sub.add_parser("remove", help="delete an invoice that is not fiscalized")
    p.add_argument("invoice_id")
    p.set_defaults(handler=_cmd_remove)

    return parser


def main(argv: list[str] | None = None) -> None:
    """Entry point for the fiskal CLI."""
    args = _build_parser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    if args.command == "init":
        _init_config()
        return

    if not _preflight(args.issuer):
        sys.exit(1)

    import requests.exceptions

    from fiskal.services.exceptions import FiscalError
    from fiskal.services.fiscalization import load_issuer
    from fiskal.services.transport import TransportConfig

    issuer = load_issuer(args.issuer)
    transport = TransportConfig.from_env()
    try:
        code = args.handler(args, issuer, transport)
    except FiscalError as exc:
        print(f"Error: {exc.message}")
        code = 1
    except requests.exceptions.RequestException as exc:
        print(f"Network error: {exc}")
        code = 1
    if code:
        sys.exit(code)


if __name__ == "__main__":
    main()
