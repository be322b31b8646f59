"""Export sender aggregates to CSV or JSON."""

import csv
import json

from .models import SenderAggregate

FIELDS = [
    "email",
    "name",
    "count",
    "unread_count",
    "first_at",
    "last_at",
    "unsubscribe_link",
    "one_click",
    "newsletter",
    "promotional",
]


def _row(agg: SenderAggregate) -> dict:
    return {
        "email": agg.sender_address,
        "name": agg.sender_name,
        "count": agg.count,
        "unread_count": agg.unread_count,
        "first_at": agg.first_at.isoformat() if agg.first_at else None,
        "last_at": agg.last_at.isoformat() if agg.last_at else None,
        "unsubscribe_link": agg.unsubscribe_link,
        "one_click": agg.one_click,
        "newsletter": agg.newsletter,
        "promotional": agg.promotional,
    }


def export_senders(senders: list[SenderAggregate], format: str, output_path: str) -> int:
    """Write sender aggregates to a file and return the number of rows.

    Args:
        senders: Aggregates to export, in the order they should appear.
        format: Output format, either 'csv' or 'json'.
        output_path: Path to write the output file.
    """
    rows = [_row(agg) for agg in senders]

    if format == "csv":
        with open(output_path, "w", newline="") as f:
            writer = csv.DictWriter(f, fieldnames=FIELDS)
            writer.writeheader()
            writer.writerows(rows)
    elif format == "json":
        with open(output_path, "w") as f:
            json.dump(rows, f, indent=2)
    else:
        raise ValueError(f"Unsupported export format: {format}")

    return len(rows)
