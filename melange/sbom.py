"""SPDX software bill of materials generation for built package trees."""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
from collections.abc import Iterator
from dataclasses import dataclass, field
from datetime import datetime, timezone
from importlib.metadata import PackageNotFoundError, version as _dist_version
from pathlib import Path
from typing import Any, Union
from urllib.parse import quote, quote_plus

from melange.util import hash_file, source_date_epoch

NOASSERTION = "NOASSERTION"

_INVALID_ID_CHARS_RE = re.compile(r"[^a-zA-Z0-9\-.]+")
_SBOM_DIR = Path("var", "lib", "db", "sbom")
_HASHES = (("SHA1", hashlib.sha1), ("SHA256", hashlib.sha256), ("SHA512", hashlib.sha512))
_JSON_ESCAPES = {
    "<": "\\u003c",
    ">": "\\u003e",
    "&": "\\u0026",
    "\u2028": "\\u2028",
    "\u2029": "\\u2029",
}


def _tool_version() -> str:
    try:
        return _dist_version("melange")
    except PackageNotFoundError:
        return "devel"


def string_to_identifier(value: str) -> str:
    """Turn ``value`` into a string usable inside an SPDX identifier.

    ':' and '/' become '-'; every other disallowed character is replaced by
    'C' followed by the decimal value of each of its UTF-8 bytes.
    """
    value = value.replace(":", "-").replace("/", "-")
    return _INVALID_ID_CHARS_RE.sub(
        lambda match: "".join(f"C{byte}" for byte in match.group(0).encode("utf-8")),
        value,
    )


@dataclass(eq=False)
class Package:
    """A package in the bill of materials."""

    name: str
    version: str = ""
    identifier: str = ""
    files_analyzed: bool = False
    home_page: str = ""
    supplier: str = ""
    originator: str = ""
    copyright: str = ""
    license_declared: str = NOASSERTION
    license_concluded: str = NOASSERTION
    namespace: str = ""
    arch: str = ""
    checksums: dict[str, str] = field(default_factory=dict)
    relationships: list[Relationship] = field(default_factory=list)

    def spdx_id(self) -> str:
        """Return the SPDX element identifier of this package."""
        return f"SPDXRef-Package-{self.identifier or self.name}"


@dataclass(eq=False)
class File:
    """A file in the bill of materials."""

    name: str
    version: str = ""
    identifier: str = ""
    checksums: dict[str, str] = field(default_factory=dict)
    relationships: list[Relationship] = field(default_factory=list)

    def spdx_id(self) -> str:
        """Return the SPDX element identifier of this file."""
        return f"SPDXRef-File-{self.identifier or self.name}"


Element = Union[Package, File]


@dataclass
class Relationship:
    """A typed link from one element of the bill of materials to another."""

    source: Element
    target: Element
    type: str


@dataclass
class Bom:
    """The format-independent bill of materials."""

    packages: list[Package] = field(default_factory=list)
    files: list[File] = field(default_factory=list)


@dataclass
class Spec:
    """What to describe: the package tree at ``path`` and its metadata."""

    path: str | os.PathLike[str]
    package_name: str
    package_version: str = ""
    license: str = ""
    copyright: str = ""
    namespace: str = ""
    arch: str = ""
    languages: list[str] = field(default_factory=list)


@dataclass
class Options:
    """Which parts of the analysis to run."""

    scan_licenses: bool = True
    scan_files: bool = True


def _walk_files(root: str, rel: str) -> Iterator[str]:
    directory = os.path.join(root, rel) if rel else root
    with os.scandir(directory) as entries:
        for entry in entries:
            child = f"{rel}/{entry.name}" if rel else entry.name
            if entry.is_symlink():
                continue
            if entry.is_dir(follow_symlinks=False):
                yield from _walk_files(root, child)
            else:
                yield "/" + child


def get_directory_tree(dir_path: str | os.PathLike[str]) -> list[str]:
    """Return the sorted '/'-rooted paths of all non-directory, non-symlink entries."""
    return sorted(_walk_files(os.fspath(dir_path), ""))


def compute_verification_code(hash_list: list[str]) -> str:
    """Return the SPDX package verification code for a list of SHA1 hashes."""
    return hashlib.sha1("".join(sorted(hash_list)).encode("utf-8")).hexdigest()


def _checksums(checksums: dict[str, str]) -> list[dict[str, str]]:
    return [
        {"algorithm": algo, "checksumValue": checksums[algo]} for algo in sorted(checksums)
    ]


def _package_url(p: Package) -> str:
    segments = "/".join(quote(part, safe="$&+:=@") for part in p.namespace.split("/") if part)
    purl = f"pkg:apk/{segments}/{quote(p.name, safe='$&+:=@')}"
    if p.version:
        purl += "@" + quote(p.version, safe="$&+:=@")
    if p.arch:
        purl += "?arch=" + quote_plus(p.arch, safe="")
    return purl


def _has_relationship(doc: dict[str, Any], rel: Relationship) -> bool:
    source, target = rel.source.spdx_id(), rel.target.spdx_id()
    return any(
        existing["spdxElementId"] == source
        and existing["relatedSpdxElement"] == target
        and existing["relationshipType"] == rel.type
        for existing in doc["relationships"]
    )


def _add_related(doc: dict[str, Any], target: Element) -> None:
    if isinstance(target, File):
        _add_file(doc, target)
    else:
        _add_package(doc, target)


def _add_package(doc: dict[str, Any], p: Package) -> None:
    spdx_pkg: dict[str, Any] = {
        "SPDXID": p.spdx_id(),
        "name": p.name,
        "versionInfo": p.version,
        "filesAnalyzed": False,
        "hasFiles": [],
        "licenseConcluded": p.license_concluded,
        "licenseDeclared": p.license_declared,
        "downloadLocation": NOASSERTION,
        "licenseInfoFromFiles": [],
        "copyrightText": p.copyright,
        "checksums": _checksums(p.checksums),
        "externalRefs": [],
    }

    # Every contained file is listed and its hash feeds the verification code.
    hash_list = []
    excluded = []
    for rel in p.relationships:
        if isinstance(rel.target, File):
            spdx_pkg["hasFiles"].append(rel.target.spdx_id())
            sha1 = rel.target.checksums.get("SHA1")
            if sha1 is not None:
                hash_list.append(sha1)
            else:
                excluded.append(rel.target.spdx_id())

    code = compute_verification_code(hash_list)
    if code:
        verification: dict[str, Any] = {"packageVerificationCodeValue": code}
        if excluded:
            verification["packageVerificationCodeExcludedFiles"] = excluded
        spdx_pkg["packageVerificationCode"] = verification
        spdx_pkg["filesAnalyzed"] = True

    if p.namespace:
        spdx_pkg["externalRefs"].append(
            {
                "referenceCategory": "PACKAGE_MANAGER",
                "referenceLocator": _package_url(p),
                "referenceType": "purl",
            }
        )

    doc["packages"].append(spdx_pkg)

    for rel in p.relationships:
        if _has_relationship(doc, rel):
            continue
        _add_related(doc, rel.target)
        doc["relationships"].append(
            {
                "spdxElementId": rel.source.spdx_id(),
                "relationshipType": rel.type,
                "relatedSpdxElement": rel.target.spdx_id(),
            }
        )


def _add_file(doc: dict[str, Any], f: File) -> None:
    doc["files"].append(
        {
            "SPDXID": f.spdx_id(),
            "fileName": f.name,
            "licenseConcluded": NOASSERTION,
            "fileTypes": [],
            "licenseInfoInFiles": [],
            "checksums": _checksums(f.checksums),
        }
    )
    for rel in f.relationships:
        if not _has_relationship(doc, rel):
            _add_related(doc, rel.target)


def _format_time(moment: datetime) -> str:
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=timezone.utc)
    moment = moment.astimezone(timezone.utc)
    return moment.strftime("%Y-%m-%dT%H:%M:%SZ")


def build_document_spdx(spec: Spec, doc: Bom) -> dict[str, Any]:
    """Build an SPDX 2.3 document, as JSON-ready data, from ``doc``.

    The creation time honours SOURCE_DATE_EPOCH.
    """
    created = source_date_epoch(datetime.now(timezone.utc))
    name = f"apk-{spec.package_name}-{spec.package_version}"
    spdx_doc: dict[str, Any] = {
        "SPDXID": f"SPDXRef-DOCUMENT-{name}",
        "name": name,
        "spdxVersion": "SPDX-2.3",
        "creationInfo": {
            "created": _format_time(created),
            "creators": [
                f"Tool: melange ({_tool_version()})",
                "Organization: Chainguard, Inc",
            ],
            "licenseListVersion": "3.18",
        },
        "dataLicense": "CC0-1.0",
        "documentNamespace": "https://spdx.org/spdxdocs/chainguard/melange/",
        "documentDescribes": [],
        "files": [],
        "packages": [],
        "relationships": [],
        "externalDocumentRefs": [],
    }

    for p in doc.packages:
        spdx_doc["documentDescribes"].append(string_to_identifier(p.spdx_id()))
        _add_package(spdx_doc, p)
    for f in doc.files:
        spdx_doc["documentDescribes"].append(string_to_identifier(f.spdx_id()))
        _add_file(spdx_doc, f)
    return spdx_doc


def _encode_json(document: dict[str, Any]) -> str:
    text = json.dumps(document, indent=2, ensure_ascii=False)
    for char, escape in _JSON_ESCAPES.items():
        text = text.replace(char, escape)
    return text + "\n"


class Generator:
    """Generates an SPDX SBOM for a package tree and stores it inside that tree."""

    def __init__(self, options: Options | None = None, logger: logging.Logger | None = None):
        self.options = options if options is not None else Options()
        self.logger = logger if logger is not None else logging.getLogger("melange.sbom")

    def generate_sbom(self, spec: Spec) -> Path | None:
        """Write the SBOM for ``spec`` and return its path.

        Returns None without writing anything when the package directory
        does not exist.  Raises ValueError when the package has no name.
        """
        if not self._check_environment(spec):
            return None

        doc = Bom()
        package = self._generate_apk_package(spec)
        if self.options.scan_files:
            self._scan_files(spec, package)
        doc.packages.append(package)
        return self._write_sbom(spec, doc)

    def _check_environment(self, spec: Spec) -> bool:
        dir_path = Path(os.path.abspath(spec.path))
        try:
            dir_path.stat()
        except FileNotFoundError:
            self.logger.warning("Warning: Working directory not found, probably apk is empty")
            return False
        return True

    @staticmethod
    def _generate_apk_package(spec: Spec) -> Package:
        if not spec.package_name:
            raise ValueError("unable to generate package, name not specified")
        return Package(
            identifier=string_to_identifier(f"{spec.package_name}-{spec.package_version}"),
            name=spec.package_name,
            version=spec.package_version,
            license_declared=spec.license or NOASSERTION,
            license_concluded=NOASSERTION,
            copyright=spec.copyright,
            namespace=spec.namespace,
            arch=spec.arch,
        )

    @staticmethod
    def _scan_files(spec: Spec, package: Package) -> None:
        dir_path = os.path.abspath(spec.path)
        paths = get_directory_tree(dir_path)
        package.files_analyzed = True
        for path in paths:
            full = os.path.join(dir_path, path.lstrip("/"))
            entry = File(
                identifier=string_to_identifier(path),
                name=path,
                checksums={algo: hash_file(full, factory()) for algo, factory in _HASHES},
            )
            package.relationships.append(
                Relationship(source=package, target=entry, type="CONTAINS")
            )

    @staticmethod
    def _write_sbom(spec: Spec, doc: Bom) -> Path:
        spdx_doc = build_document_spdx(spec, doc)
        sbom_dir = Path(os.path.abspath(spec.path)) / _SBOM_DIR
        sbom_dir.mkdir(mode=0o755, parents=True, exist_ok=True)
        target = sbom_dir / f"{spec.package_name}-{spec.package_version}.spdx.json"
        target.write_text(_encode_json(spdx_doc), encoding="utf-8")
        return target