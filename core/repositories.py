"""
Collaborator interfaces consumed by the generation pipeline and service.

Templates, customers and certificates are looked up by identifier through
these stores; audit events go to an append-only sink. The in-memory
implementations back the CLI, the default API wiring and the tests; a
relational implementation only needs to satisfy the same protocols.

Stores hand out copies so callers never share a mutable record.
"""

import json
import threading
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol

from core.models import AuditEvent, Certificate, Customer, Template
from core.templating import extract_placeholders


class TemplateStore(Protocol):
    def get_for_owner(self, template_id: int, owner_id: int) -> Optional[Template]:
        """Return the template only if ``owner_id`` owns it."""
        ...


class CustomerStore(Protocol):
    def get(self, customer_id: int) -> Optional[Customer]:
        ...


class CertificateStore(Protocol):
    def save(self, certificate: Certificate) -> Certificate:
        ...

    def get(self, unique_id: str) -> Optional[Certificate]:
        ...

    def get_for_owner(self, unique_id: str, owner_id: int) -> Optional[Certificate]:
        ...

    def list_for_owner(self, owner_id: int) -> List[Certificate]:
        ...

    def known_ids(self) -> Iterable[str]:
        ...

    def delete(self, unique_id: str) -> bool:
        ...


class AuditSink(Protocol):
    def append(self, event: AuditEvent) -> None:
        ...


class InMemoryTemplateStore:
    """Dict-backed template store; placeholders are extracted on insert."""

    def __init__(self, templates: Optional[Iterable[Template]] = None):
        self._lock = threading.Lock()
        self._templates: Dict[int, Template] = {}
        for template in templates or []:
            self.add(template)

    def add(self, template: Template) -> Template:
        stored = template.model_copy(update={"placeholders": extract_placeholders(template.content)})
        with self._lock:
            self._templates[stored.id] = stored
        return stored.model_copy()

    def get_for_owner(self, template_id: int, owner_id: int) -> Optional[Template]:
        with self._lock:
            template = self._templates.get(template_id)
        if template is None or template.customer_id != owner_id:
            return None
        return template.model_copy()


class InMemoryCustomerStore:
    def __init__(self, customers: Optional[Iterable[Customer]] = None):
        self._lock = threading.Lock()
        self._customers: Dict[int, Customer] = {c.id: c for c in customers or []}

    def add(self, customer: Customer) -> Customer:
        with self._lock:
            self._customers[customer.id] = customer
        return customer

    def get(self, customer_id: int) -> Optional[Customer]:
        with self._lock:
            return self._customers.get(customer_id)


class InMemoryCertificateStore:
    """Dict-backed certificate store keyed by unique id."""

    def __init__(self):
        self._lock = threading.Lock()
        self._certificates: Dict[str, Certificate] = {}

    def save(self, certificate: Certificate) -> Certificate:
        with self._lock:
            self._certificates[certificate.unique_id] = certificate.model_copy(deep=True)
        return certificate

    def get(self, unique_id: str) -> Optional[Certificate]:
        with self._lock:
            certificate = self._certificates.get(unique_id)
        return certificate.model_copy(deep=True) if certificate is not None else None

    def get_for_owner(self, unique_id: str, owner_id: int) -> Optional[Certificate]:
        certificate = self.get(unique_id)
        if certificate is None or certificate.customer_id != owner_id:
            return None
        return certificate

    def list_for_owner(self, owner_id: int) -> List[Certificate]:
        with self._lock:
            owned = [c for c in self._certificates.values() if c.customer_id == owner_id]
        owned.sort(key=lambda c: c.created_at, reverse=True)
        return [c.model_copy(deep=True) for c in owned]

    def known_ids(self) -> Iterable[str]:
        with self._lock:
            return set(self._certificates)

    def delete(self, unique_id: str) -> bool:
        with self._lock:
            return self._certificates.pop(unique_id, None) is not None

    def __len__(self) -> int:
        with self._lock:
            return len(self._certificates)


class InMemoryAuditSink:
    """Collects audit events in arrival order (no cross-task ordering guarantee)."""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[AuditEvent] = []

    def append(self, event: AuditEvent) -> None:
        with self._lock:
            self._events.append(event)

    @property
    def events(self) -> List[AuditEvent]:
        with self._lock:
            return list(self._events)


class JsonlAuditSink:
    """Append-only audit log, one JSON object per line."""

    def __init__(self, path: Path):
        self.path = Path(path)
        self._lock = threading.Lock()

    def append(self, event: AuditEvent) -> None:
        line = json.dumps(event.model_dump(mode="json"), ensure_ascii=False, sort_keys=True)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(line + "\n")

    def read_events(self) -> List[AuditEvent]:
        if not self.path.exists():
            return []
        with open(self.path, encoding="utf-8") as f:
            return [AuditEvent.model_validate_json(line) for line in f if line.strip()]
