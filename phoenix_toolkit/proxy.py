"""Neutralise TLS in restored reverse-proxy configs.

Certificates are never part of a backup, so a restored site that still points
at ``/etc/letsencrypt/...`` would stop nginx or apache from starting. Any file
referencing a certificate missing on this host has its TLS directives
commented out and is left serving plaintext until new certificates are issued.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from pathlib import Path

from .config import SystemPaths

NEUTRALISED_MARK = "# phoenix: certificate missing, disabled: "

NGINX_CERT = re.compile(r"^\s*(ssl_certificate(?:_key)?|ssl_trusted_certificate)\s+([^;\s]+)\s*;")
NGINX_TLS_LINES = (
    re.compile(r"^\s*ssl_certificate(?:_key)?\s"),
    re.compile(r"^\s*ssl_trusted_certificate\s"),
    re.compile(r"^\s*listen\s+(?:\S*:)?443\b"),
    re.compile(r"^\s*include\s+\S*options-ssl-nginx\.conf"),
    re.compile(r"^\s*ssl_dhparam\s"),
)

APACHE_CERT = re.compile(
    r"^\s*(SSLCertificateFile|SSLCertificateKeyFile|SSLCertificateChainFile)\s+(\S+)", re.IGNORECASE
)
APACHE_TLS_LINES = (
    re.compile(r"^\s*SSLEngine\s", re.IGNORECASE),
    re.compile(r"^\s*SSLCertificate(?:File|KeyFile|ChainFile)\s", re.IGNORECASE),
    re.compile(r"^\s*Include\s+\S*options-ssl-apache\.conf", re.IGNORECASE),
)


def missing_certificates(text: str, pattern: re.Pattern[str], paths: SystemPaths) -> list[str]:
    missing: list[str] = []
    for line in text.splitlines():
        if line.lstrip().startswith("#"):
            continue
        match = pattern.match(line)
        if match and not paths.resolve(match.group(2).strip("\"'")).exists():
            missing.append(match.group(2))
    return missing


def comment_out(text: str, patterns: Iterable[re.Pattern[str]]) -> tuple[str, int]:
    compiled = tuple(patterns)
    changed = 0
    lines: list[str] = []
    for line in text.splitlines(keepends=True):
        if not line.lstrip().startswith("#") and any(p.match(line) for p in compiled):
            indent = line[: len(line) - len(line.lstrip())]
            lines.append(f"{indent}{NEUTRALISED_MARK}{line.lstrip()}")
            changed += 1
        else:
            lines.append(line)
    return "".join(lines), changed


def _config_files(directory: Path) -> list[Path]:
    if not directory.exists():
        return []
    return sorted(
        path for path in directory.rglob("*") if path.is_file() and not path.is_symlink()
    )


def neutralise_nginx(paths: SystemPaths) -> list[Path]:
    """Drop ``*-ssl*`` enabled sites and comment out dangling TLS directives."""

    changed: list[Path] = []
    enabled = paths.nginx / "sites-enabled"
    if enabled.is_dir():
        for site in sorted(enabled.glob("*-ssl*")):
            site.unlink()
            changed.append(site)
    for config in _config_files(paths.nginx):
        text = config.read_text(encoding="utf-8", errors="replace")
        if not missing_certificates(text, NGINX_CERT, paths):
            continue
        updated, count = comment_out(text, NGINX_TLS_LINES)
        if count:
            config.write_text(updated, encoding="utf-8")
            changed.append(config)
    return changed


def neutralise_apache(paths: SystemPaths) -> list[Path]:
    """Disable certbot ``*-le-ssl`` sites and comment out dangling SSL directives."""

    changed: list[Path] = []
    enabled = paths.apache / "sites-enabled"
    if enabled.is_dir():
        for site in sorted(enabled.glob("*-le-ssl*")):
            site.unlink()
            changed.append(site)
    for config in _config_files(paths.apache):
        text = config.read_text(encoding="utf-8", errors="replace")
        if not missing_certificates(text, APACHE_CERT, paths):
            continue
        updated, count = comment_out(text, APACHE_TLS_LINES)
        if count:
            config.write_text(updated, encoding="utf-8")
            changed.append(config)
    return changed
