from .allocator import Allocation, BlobShardAllocator
from .batch import BatchIngestCoordinator
from .config import DeriveMode, KindConfig, NamingMode, load_kind_configs, parse_kind_config
from .duplicates import DuplicateClassifier, Verdict
from .registry import IngestSubsystem, get_subsystem
from .shard_tree import ShardTree
from .writer import DualResourceIngestWriter, IngestItem

__all__ = [
    'Allocation',
    'BlobShardAllocator',
    'BatchIngestCoordinator',
    'DeriveMode',
    'DualResourceIngestWriter',
    'DuplicateClassifier',
    'IngestItem',
    'IngestSubsystem',
    'KindConfig',
    'NamingMode',
    'ShardTree',
    'Verdict',
    'get_subsystem',
    'load_kind_configs',
    'parse_kind_config',
]
