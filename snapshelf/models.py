from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional

from snapshelf.exceptions import ValidationError


# Entry types carried inside an archive container
ENTRY_TYPES = ('database', 'file', 'search-index', 'cache')

# Older source names still accepted in source descriptors
ENTRY_TYPE_ALIASES = {
    'files': 'file',
    'elasticsearch': 'search-index',
    'redis': 'cache',
}

BACKUP_TYPES = ('full', 'incremental', 'selective')

# Backup store locations (subdirectories of the backup root)
LOCATIONS = ('full', 'incremental', 'archived', 'temp')


def normalize_entry_type(entry_type: str) -> str:
    """
    Resolve an entry type or one of its aliases.

    Raises:
        ValidationError: If the type is unknown
    """
    resolved = ENTRY_TYPE_ALIASES.get(entry_type, entry_type)
    if resolved not in ENTRY_TYPES:
        raise ValidationError(
            f"Unknown entry type: {entry_type}. Valid options: {list(ENTRY_TYPES)}"
        )
    return resolved


@dataclass
class Entry:
    """One named unit of backed-up data"""
    name: str
    path: str
    type: str
    data: bytes = b''
    metadata: Dict[str, Any] = field(default_factory=dict)
    size: Optional[int] = None  # declared payload length, defaults to len(data)

    def __post_init__(self):
        # Unknown types are rejected by the archiver and restorer, not here,
        # so a reader can still walk past them
        self.type = ENTRY_TYPE_ALIASES.get(self.type, self.type)
        if self.size is None:
            self.size = len(self.data)

    def meta(self) -> Dict[str, Any]:
        """Frame metadata written ahead of the payload."""
        return {
            'name': self.name,
            'path': self.path,
            'type': self.type,
            'size': self.size,
            'metadata': self.metadata,
        }

    def __repr__(self):
        return f'<Entry {self.path} type={self.type} size={self.size}>'


@dataclass
class BackupRecord:
    """A backup file on disk plus what its sidecar says about it"""
    id: str
    type: str
    location: str  # full, incremental, archived
    path: str
    size: int
    created_at: datetime
    modified_at: datetime
    sources_included: List[str] = field(default_factory=list)
    compression: Dict[str, Any] = field(default_factory=dict)
    encryption: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'type': self.type,
            'location': self.location,
            'path': self.path,
            'size': self.size,
            'created_at': self.created_at.isoformat(),
            'modified_at': self.modified_at.isoformat(),
            'sources_included': list(self.sources_included),
            'compression': dict(self.compression),
            'encryption': dict(self.encryption),
        }

    def __repr__(self):
        return f'<BackupRecord {self.id} type={self.type} location={self.location}>'
