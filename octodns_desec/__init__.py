# SPDX-License-Identifier: Apache-2.0
# Copyright (c) 2026 Russell Sutherland, University of Toronto
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
octodns_desec — deSEC (https://desec.io) REST API v1 provider for octodns.

Auth:   static API token  →  Authorization: Token <token>
Write:  PATCH /domains/<zone>/rrsets/ with a list of RRsets; an RRset with
        an empty "records" list is deleted.
Paging: RRset listings opt in to cursor pagination (?cursor=) and follow
        the Link: <...>; rel="next" header.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from functools import partial
from threading import Lock
from typing import Any, Callable

from requests import RequestException, Session
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from octodns.provider import ProviderException
from octodns.provider.base import BaseProvider
from octodns.record import Record, Rrset
from octodns.zone import Zone

__VERSION__ = "0.0.1"
__all__ = ["DeSECProvider"]

# ── capabilities ────────────────────────────────────────────────────────────

# record types this provider can read *and* write
SUPPORTS = {"A", "AAAA", "CAA", "CNAME", "MX", "NS", "SRV", "TLSA", "TXT"}

FEATURES: dict[str, str] = {
    "dual_host": "unimplemented",
    "officially_supported": "cannot",
    "create_domains": "can",
    "alias": "cannot",
    "srv": "can",
    "sshfp": "cannot",
    "caa": "can",
    "tlsa": "can",
    "ptr": "unimplemented",
    "get_zones": "can",
    "auto_dnssec": "cannot",
}

DEFAULT_NAMESERVERS = ("ns1.desec.io.", "ns2.desec.org.")

# TTL floor applied to every desired record
DEFAULT_MIN_TTL = 3600

UPSERT = "upsert"
DELETE = "delete"


class DeSECClientException(ProviderException):
    pass


class DeSECClientAuthException(DeSECClientException):
    pass


class DeSECClientNotFound(DeSECClientException):
    pass


class DeSECPlanningException(ProviderException):
    pass


class DeSECApplyException(ProviderException):
    def __init__(self, failures: list[tuple[str, Exception]]) -> None:
        self.failures = failures
        lines = "\n  ".join(f"{msg}: {err}" for msg, err in failures)
        super().__init__(f"{len(failures)} correction(s) failed:\n  {lines}")


class DeSECClient:
    """
    Thin wrapper around the deSEC REST API v1.

    * One requests.Session per client, shared across calls.
    * Throttling (429, honouring Retry-After) and transient 5xx responses are
      retried by the urllib3 adapter; nothing above the transport retries.
    * List endpoints follow Link rel="next"; callers get a plain list back.
    * Every non-2xx status raises so that octodns can surface the error.
    """

    DEFAULT_BASE_URL = "https://desec.io/api/v1"

    def __init__(
        self,
        token: str,
        base_url: str = DEFAULT_BASE_URL,
        timeout: int = 30,
    ) -> None:
        self.log = logging.getLogger(f"DeSECClient[{base_url}]")
        if not token:
            raise DeSECClientAuthException("missing deSEC auth token")
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self._session = Session()
        self._session.headers.update(
            {
                "Authorization": f"Token {token}",
                "Accept": "application/json",
                "User-Agent": f"octodns-desec/{__VERSION__}",
            }
        )
        retry = Retry(
            total=3,
            backoff_factor=1,
            status_forcelist={429, 500, 502, 503, 504},
            allowed_methods={"GET", "POST", "PUT", "PATCH", "DELETE"},
            raise_on_status=False,
        )
        self._session.mount("https://", HTTPAdapter(max_retries=retry))
        self._session.mount("http://", HTTPAdapter(max_retries=retry))

    # ── low‑level HTTP ──────────────────────────────────────────────────────

    def _send(
        self,
        method: str,
        url: str,
        *,
        params: dict | None = None,
        json: Any = None,
    ):
        resp = self._session.request(
            method, url, params=params, json=json, timeout=self.timeout
        )
        self.log.debug("_send: %s %s -> %d", method, url, resp.status_code)
        if resp.ok:
            return resp
        path = url[len(self.base_url):] if url.startswith(self.base_url) else url
        msg = f"deSEC API error {resp.status_code} {method} {path}: {resp.text[:400]}"
        if resp.status_code in (401, 403):
            raise DeSECClientAuthException(msg)
        if resp.status_code == 404:
            raise DeSECClientNotFound(msg)
        raise DeSECClientException(msg)

    def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict | None = None,
        json: Any = None,
    ) -> Any:
        resp = self._send(method, f"{self.base_url}{path}", params=params, json=json)
        if resp.status_code == 204 or not resp.content:
            return None
        return resp.json()

    def _list_all(self, path: str, params: dict | None = None) -> list[dict]:
        """
        Fetch every page of a deSEC list endpoint and return a flat list.

        Pages are chained through the Link header; the next URL already
        carries the cursor so params only go out with the first request.
        """
        url: str | None = f"{self.base_url}{path}"
        results: list[dict] = []
        while url:
            resp = self._send("GET", url, params=params)
            results.extend(resp.json())
            url = resp.links.get("next", {}).get("url")
            params = None
        return results

    # ── domains ──────────────────────────────────────────────────────────────

    def domains(self) -> list[dict]:
        return self._list_all("/domains/")

    def domain_create(self, name: str) -> dict:
        self.log.info("domain_create: %s", name)
        return self._request("POST", "/domains/", json={"name": name})

    # ── rrsets ───────────────────────────────────────────────────────────────

    def rrsets(self, zone: str) -> list[dict]:
        return self._list_all(f"/domains/{zone}/rrsets/", {"cursor": ""})

    def rrsets_patch(self, zone: str, rrsets: list[dict]) -> Any:
        return self._request("PATCH", f"/domains/{zone}/rrsets/", json=rrsets)

    def rrset_upsert(self, zone: str, rrset: dict) -> Any:
        return self.rrsets_patch(zone, [rrset])

    def rrset_delete(self, zone: str, rrset: dict) -> Any:
        body = {"subname": rrset["subname"], "type": rrset["type"], "records": []}
        return self.rrsets_patch(zone, [body])


class DomainIndex:
    """Domain name → deSEC domain object, names kept without trailing dot."""

    def __init__(self) -> None:
        self._lock = Lock()
        self._domains: dict[str, dict] = {}

    @staticmethod
    def _key(name: str) -> str:
        return name.rstrip(".")

    def refresh(self, domains: list[dict]) -> None:
        index = {self._key(d["name"]): d for d in domains}
        with self._lock:
            self._domains = index

    def add(self, domain: dict) -> None:
        with self._lock:
            self._domains[self._key(domain["name"])] = domain

    def get(self, name: str) -> dict | None:
        with self._lock:
            return self._domains.get(self._key(name))

    def names(self) -> list[str]:
        with self._lock:
            return sorted(self._domains)

    def __contains__(self, name: str) -> bool:
        return self.get(name) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._domains)


# ── record conversion helpers ────────────────────────────────────────────────


def _subname_from_fqdn(fqdn: str, zone_fqdn: str) -> str:
    """
    Strip the zone suffix from an owner name.
    The apex becomes the empty string, which is how deSEC spells it.
    """
    zone_dot = zone_fqdn.rstrip(".") + "."
    abs_name = fqdn if fqdn.endswith(".") else fqdn + "."
    if abs_name == zone_dot:
        return ""
    if abs_name.endswith("." + zone_dot):
        return abs_name[: -(len(zone_dot) + 1)]
    if fqdn.endswith("."):
        raise DeSECPlanningException(f"{fqdn} is not within zone {zone_dot}")
    # already relative
    return fqdn


def _fqdn_from_subname(subname: str, zone_fqdn: str) -> str:
    zone_dot = zone_fqdn.rstrip(".") + "."
    if not subname:
        return zone_dot
    return f"{subname}.{zone_dot}"


def _rrset_from_desec(rr: dict, zone_fqdn: str) -> Rrset | None:
    """
    Convert one deSEC RRset to an octodns Rrset, or None when the type is
    not one we manage.

    deSEC RRset shape (abridged):
    {
        "domain": "unit.tests",
        "subname": "www",              # "" for the apex
        "name": "www.unit.tests.",
        "type": "A",
        "ttl": 3600,
        "records": ["1.2.3.4", "1.2.3.5"]   # presentation format
    }
    """
    _type = rr.get("type", "")
    if _type not in SUPPORTS:
        return None
    records = rr.get("records") or []
    if not records:
        return None
    name = rr.get("name") or _fqdn_from_subname(rr.get("subname", ""), zone_fqdn)
    return Rrset(name, _type, int(rr["ttl"]), records)


def _records_to_desec(records: list[Record], zone_fqdn: str) -> list[dict]:
    """
    Fold octodns records into deSEC RRset bodies, one per (subname, type).

    Every value sharing a subname and type ends up in the same body since a
    deSEC write replaces the whole RRset.
    """
    folded: dict[tuple[str, str], dict] = {}
    for record in records:
        rrset = record.to_rrset()
        subname = _subname_from_fqdn(rrset.name, zone_fqdn)
        body = folded.setdefault(
            (subname, rrset._type),
            {"subname": subname, "type": rrset._type, "ttl": rrset.ttl, "records": []},
        )
        for rdata in rrset.rdatas:
            if rdata not in body["records"]:
                body["records"].append(rdata)
    return list(folded.values())


def _group_by_key(records) -> dict[tuple[str, str], list[Record]]:
    grouped: dict[tuple[str, str], list[Record]] = {}
    for record in records:
        grouped.setdefault((record.fqdn, record._type), []).append(record)
    return grouped


# ── diff groups ──────────────────────────────────────────────────────────────


def _change_messages(change) -> list[str]:
    record = change.record
    label = f"{record._type} {record.decoded_fqdn}"
    change_type = change.__class__.__name__

    if change_type == "Create":
        new = change.new.to_rrset()
        return [f"CREATE {label} {v} ttl={new.ttl}" for v in new.rdatas]

    if change_type == "Delete":
        old = change.existing.to_rrset()
        return [f"DELETE {label} {v} ttl={old.ttl}" for v in old.rdatas]

    old = change.existing.to_rrset()
    new = change.new.to_rrset()
    msgs = [f"DELETE {label} {v} ttl={old.ttl}" for v in old.rdatas if v not in new.rdatas]
    msgs += [f"CREATE {label} {v} ttl={new.ttl}" for v in new.rdatas if v not in old.rdatas]
    if old.ttl != new.ttl:
        msgs += [
            f"MODIFY {label} {v} ttl={old.ttl}->{new.ttl}"
            for v in new.rdatas
            if v in old.rdatas
        ]
    return msgs or [f"MODIFY {label}"]


def changed_groups(changes) -> dict[tuple[str, str], list[str]]:
    """
    Regroup octodns changes by (fqdn, type), one message per value-level
    difference, keeping the order the changes arrived in.
    """
    groups: dict[tuple[str, str], list[str]] = {}
    for change in changes:
        record = change.record
        groups.setdefault((record.fqdn, record._type), []).extend(
            _change_messages(change)
        )
    return groups


# ── corrections ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RrsetWrite:
    key: tuple[str, str]
    kind: str
    rrset: dict


@dataclass
class Correction:
    """A message for the user and the call that makes it true."""

    msg: str
    f: Callable[[], Any]

    def __call__(self) -> Any:
        return self.f()


def _noop() -> None:
    return None


# ── Provider ─────────────────────────────────────────────────────────────────


class DeSECProvider(BaseProvider):
    """
    octodns provider for deSEC.

    Config example
    --------------
    providers:
      desec:
        class: octodns_desec.DeSECProvider
        token: env/DESEC_TOKEN
        base_url: https://desec.io/api/v1   # optional
        timeout: 30                         # HTTP timeout in seconds, default 30
    """

    SUPPORTS_GEO = False
    SUPPORTS_DYNAMIC = False
    SUPPORTS_POOL_VALUES = False
    SUPPORTS_ROOT_NS = False
    SUPPORTS = SUPPORTS
    FEATURES = FEATURES

    def __init__(
        self,
        id: str,
        token: str | None = None,
        base_url: str = DeSECClient.DEFAULT_BASE_URL,
        timeout: int = 30,
        *args,
        **kwargs,
    ) -> None:
        self.log = logging.getLogger(f"DeSECProvider[{id}]")
        self.log.debug("__init__: id=%s base_url=%s", id, base_url)
        super().__init__(id, *args, **kwargs)

        self._client = DeSECClient(token=token, base_url=base_url, timeout=timeout)
        self._domains = DomainIndex()
        # also proves the token works before any zone is touched
        self._refresh_domains()

    def _refresh_domains(self) -> None:
        self._domains.refresh(self._client.domains())
        self.log.debug("_refresh_domains: %d domain(s)", len(self._domains))

    def get_nameservers(self, zone_fqdn: str) -> list[str]:
        return list(DEFAULT_NAMESERVERS)

    # ── domain existence ─────────────────────────────────────────────────────

    def ensure_domain_exists(self, zone_fqdn: str) -> None:
        self._refresh_domains()
        if zone_fqdn in self._domains:
            return
        self.log.info("ensure_domain_exists: creating %s", zone_fqdn)
        created = self._client.domain_create(zone_fqdn.rstrip("."))
        self._domains.add(created)

    # ── populate (read) ──────────────────────────────────────────────────────

    def list_zones(self) -> list[str]:
        """Return every domain of the account (with trailing dot)."""
        self._refresh_domains()
        return [f"{name}." for name in self._domains.names()]

    def _records_for(self, zone, lenient: bool = False) -> list[Record]:
        records = []
        for rr in self._client.rrsets(zone.name.rstrip(".")):
            rrset = _rrset_from_desec(rr, zone.name)
            if rrset is None:
                self.log.debug(
                    "_records_for: skipping unsupported %s %r", rr.get("type"), rr.get("subname")
                )
                continue
            records.append(Record.from_rrset(zone, rrset, source=self, lenient=lenient))
        return records

    def get_zone_records(self, zone_fqdn: str, lenient: bool = False) -> list[Record]:
        """
        Read every RRset of *zone_fqdn* and convert it to octodns records,
        one per (subname, type) holding all of the RRset's values.
        """
        return self._records_for(Zone(zone_fqdn.rstrip(".") + ".", []), lenient=lenient)

    def populate(self, zone, target=False, lenient=False):
        """
        Fetch all RRsets for *zone* from deSEC and add them to the octodns
        Zone object.

        Returns True if the domain exists in the account, False otherwise.
        """
        self.log.debug("populate: name=%s target=%s", zone.name, target)

        before = len(zone.records)

        if zone.name not in self._domains:
            self._refresh_domains()
        if zone.name not in self._domains:
            self.log.debug("populate: zone %s not found in deSEC", zone.name)
            return False

        for record in self._records_for(zone, lenient=lenient):
            zone.add_record(record, lenient=lenient)

        added = len(zone.records) - before
        self.log.info("populate: zone %s — added %d record(s)", zone.name, added)
        return True

    # ── normalize ────────────────────────────────────────────────────────────

    def _process_desired_zone(self, desired):
        for record in sorted(desired.records):
            if record._type == "ALIAS":
                self.log.warning(
                    "deSEC does not support alias records, omitting %s", record.fqdn
                )
                desired.remove_record(record)
                continue
            if record.ttl < DEFAULT_MIN_TTL:
                if record._type != "NS":
                    self.log.warning(
                        "deSEC does not support ttls < %d. Setting ttl of %s type %s from %d to %d",
                        DEFAULT_MIN_TTL,
                        record.fqdn,
                        record._type,
                        record.ttl,
                        DEFAULT_MIN_TTL,
                    )
                record = record.copy()
                record.ttl = DEFAULT_MIN_TTL
                desired.add_record(record, replace=True)

        return super()._process_desired_zone(desired)

    # ── plan corrections ─────────────────────────────────────────────────────

    def _plan_corrections(self, desired, changes) -> list[Correction]:
        zone_fqdn = desired.name
        groups = changed_groups(changes)
        if not groups:
            return []

        desired_records = _group_by_key(desired.records)

        writes: list[tuple[RrsetWrite, list[str]]] = []
        for key, msgs in groups.items():
            fqdn, _type = key
            if key not in desired_records:
                rrset = {
                    "subname": _subname_from_fqdn(fqdn, zone_fqdn),
                    "type": _type,
                    "records": [],
                }
                writes.append((RrsetWrite(key, DELETE, rrset), msgs))
                continue
            native = _records_to_desec(desired_records[key], zone_fqdn)
            if len(native) != 1:
                raise DeSECPlanningException(
                    f"{self.id}: {fqdn} {_type} converted to {len(native)} RRsets, "
                    "expected exactly one"
                )
            writes.append((RrsetWrite(key, UPSERT, native[0]), msgs))

        corrections: list[Correction] = []
        for write, msgs in writes:
            corrections.append(
                Correction(msgs[0], partial(self._write_rrset, zone_fqdn, write))
            )
            # the API call above already covers the rest of the group
            corrections.extend(Correction(msg, _noop) for msg in msgs[1:])

        self.log.debug(
            "_plan_corrections: zone=%s groups=%d corrections=%d",
            zone_fqdn,
            len(writes),
            len(corrections),
        )
        return corrections

    def _write_rrset(self, zone_fqdn: str, write: RrsetWrite) -> None:
        zone = zone_fqdn.rstrip(".")
        self.log.debug("_write_rrset: %s %s %s", write.kind, write.rrset["type"], write.key[0])
        if write.kind == DELETE:
            self._client.rrset_delete(zone, write.rrset)
        else:
            self._client.rrset_upsert(zone, write.rrset)

    def get_corrections(self, desired) -> list[Correction]:
        """
        Populate, normalize and diff *desired* against deSEC and return the
        corrections that would converge them. Nothing is executed.
        """
        plan = self.plan(desired)
        if plan is None:
            return []
        return self._plan_corrections(plan.desired, plan.changes)

    # ── apply (write) ────────────────────────────────────────────────────────

    def _apply(self, plan):
        """
        Execute the change plan produced by octodns against deSEC.

        Every correction runs even when an earlier one fails; failures are
        collected and raised together once the list is exhausted. There is no
        rollback, corrections already applied stay applied.
        """
        desired = plan.desired
        zone_fqdn = desired.name

        self.log.debug("_apply: zone=%s changes=%d", zone_fqdn, len(plan.changes))

        if not plan.exists:
            self.ensure_domain_exists(zone_fqdn)

        failures: list[tuple[str, Exception]] = []
        for correction in self._plan_corrections(desired, plan.changes):
            self.log.info("_apply: %s", correction.msg)
            try:
                correction()
            except (DeSECClientException, RequestException) as e:
                self.log.error("_apply: %s failed: %s", correction.msg, e)
                failures.append((correction.msg, e))

        if failures:
            raise DeSECApplyException(failures)
