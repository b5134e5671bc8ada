"""
Session Audit Log
=================
Audit trail proving the compute party only ever handled ciphertext,
public parameters and public/evaluation keys.

Every cryptographically relevant step of a session is recorded with the
entity that performed it and the classes of data it touched. A compute
entry touching owner plaintext or secret key material is a violation.
"""

import json
import threading
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


OWNER = "owner"
COMPUTE = "compute"


class DataType(Enum):
    """Classification of data handled in an operation"""
    CIPHERTEXT = "ciphertext"        # Encrypted value - safe anywhere
    PLAINTEXT = "plaintext"          # Owner's private figures
    PUBLIC_PARAM = "public_param"    # Scheme parameters, public constants
    KEY_MATERIAL = "key_material"    # Public / evaluation keys
    SECRET_KEY = "secret_key"        # Never leaves the owner
    METADATA = "metadata"


class OperationType(Enum):
    GENERATE_KEYS = "generate_keys"
    ENCRYPT = "encrypt"
    DECRYPT = "decrypt"
    TRANSMIT = "transmit"
    RECEIVE = "receive"
    LOAD_PARAMETERS = "load_parameters"
    LOAD_KEY = "load_key"
    EVALUATE = "evaluate"
    ABORT = "abort"


_FORBIDDEN_FOR_COMPUTE = {DataType.PLAINTEXT.value, DataType.SECRET_KEY.value}


@dataclass
class AuditEntry:
    """Single audit log entry"""
    timestamp: str
    entity: str
    session_id: str
    operation: str
    data_types: List[str]
    is_safe: bool
    details: Dict[str, Any]
    sequence_id: int

    def to_dict(self) -> dict:
        return asdict(self)


class SessionAuditLog:
    """
    Append-only audit log shared by all sessions of a process.

    Holds no cryptographic state; sessions only append to it.
    """

    def __init__(self, log_file: Optional[str] = None):
        """
        Args:
            log_file: Optional JSON-lines file to persist entries
        """
        self._entries: List[AuditEntry] = []
        self._lock = threading.Lock()
        self._sequence = 0
        self.log_file = Path(log_file) if log_file else None

        if self.log_file and self.log_file.exists():
            self._load_from_file()

    def log(self,
            entity: str,
            session_id: str,
            operation: OperationType,
            data_types: List[DataType],
            details: Dict[str, Any] = None) -> AuditEntry:
        with self._lock:
            self._sequence += 1
            types = [dt.value for dt in data_types]
            is_safe = not (entity == COMPUTE and _FORBIDDEN_FOR_COMPUTE.intersection(types))

            entry = AuditEntry(
                timestamp=datetime.now().isoformat(),
                entity=entity,
                session_id=session_id,
                operation=operation.value,
                data_types=types,
                is_safe=is_safe,
                details=details or {},
                sequence_id=self._sequence,
            )
            self._entries.append(entry)

            if self.log_file:
                self._append_to_file(entry)
            return entry

    def get_all_entries(self) -> List[AuditEntry]:
        with self._lock:
            return list(self._entries)

    def get_entries_for_session(self, session_id: str) -> List[AuditEntry]:
        return [e for e in self.get_all_entries() if e.session_id == session_id]

    def get_entries_for_entity(self, entity: str) -> List[AuditEntry]:
        return [e for e in self.get_all_entries() if e.entity == entity]

    def get_violations(self) -> List[AuditEntry]:
        return [e for e in self.get_all_entries() if not e.is_safe]

    def verify_no_violations(self) -> bool:
        return len(self.get_violations()) == 0

    def get_compute_summary(self) -> Dict[str, Any]:
        """Prove the compute party never touched owner plaintext"""
        compute_entries = self.get_entries_for_entity(COMPUTE)

        data_types_seen = set()
        for entry in compute_entries:
            data_types_seen.update(entry.data_types)

        return {
            'total_operations': len(compute_entries),
            'sessions': len({e.session_id for e in compute_entries}),
            'data_types_handled': sorted(data_types_seen),
            'plaintext_access': DataType.PLAINTEXT.value in data_types_seen,
            'violations': len([e for e in compute_entries if not e.is_safe]),
            'privacy_preserved': not _FORBIDDEN_FOR_COMPUTE.intersection(data_types_seen),
        }

    def generate_audit_report(self) -> Dict[str, Any]:
        entries = self.get_all_entries()
        summary = self.get_compute_summary()

        return {
            'report_generated': datetime.now().isoformat(),
            'total_log_entries': len(entries),
            'entities': sorted({e.entity for e in entries}),
            'compute_privacy_audit': summary,
            'security_violations': [e.to_dict() for e in self.get_violations()],
            'conclusion': (
                "PRIVACY PRESERVED: compute party never accessed owner plaintext."
                if summary['privacy_preserved']
                else "PRIVACY VIOLATION: compute party accessed owner plaintext!"
            ),
        }

    def _append_to_file(self, entry: AuditEntry):
        with open(self.log_file, 'a') as f:
            f.write(json.dumps(entry.to_dict()) + '\n')

    def _load_from_file(self):
        with open(self.log_file, 'r') as f:
            for line in f:
                if line.strip():
                    data = json.loads(line)
                    self._entries.append(AuditEntry(**data))
                    self._sequence = max(self._sequence, data['sequence_id'])

    def clear(self):
        """Clear all entries (for testing)"""
        with self._lock:
            self._entries.clear()
            self._sequence = 0
            if self.log_file and self.log_file.exists():
                self.log_file.unlink()
