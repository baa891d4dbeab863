"""Data models for truth rows, certification cases, and result records."""

from .truth import TruthCommandRow, IssueRecord, load_truth
from .case import CertifyCase, NumericSpec
from .record import CertifyRecord, summarize
from .status import ResultStatus, TransportStatus, ValidationMode
