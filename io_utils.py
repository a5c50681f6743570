"""
IO utilities for stored profiles, what-if payloads and withdrawal sequence results.
Handles the product's camelCase JSON shapes and CSV exports of results.
"""
import json
import pandas as pd
from dataclasses import asdict, fields
from datetime import date, datetime
from typing import Any, Dict, Optional, Sequence

from household import AssetHolding, HouseholdProfile, RetirementContributions
from optimization import OptimizationVariables
from simulation import YearlyPercentileBand, monte_carlo_result_from_dict
from withdrawal_sequence import SummaryStatistics, WithdrawalSequenceResult, WithdrawalSequenceYear


def _to_camel(name: str) -> str:
    """snake_case -> camelCase, keeping the product's 'IRA' capitalization"""
    head, *rest = name.split('_')
    camel = head + ''.join(part[:1].upper() + part[1:] for part in rest)
    return camel.replace('Ira', 'IRA')


def _camel_keys(cls) -> Dict[str, str]:
    """camelCase key -> dataclass field name"""
    return {_to_camel(f.name): f.name for f in fields(cls)}


def _parse_date(value: Any) -> Optional[date]:
    """Accept a date, a datetime or an ISO string (time part ignored)"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def _safe_float(value: Any) -> float:
    """Numeric conversion where a missing value counts as zero"""
    return 0.0 if value is None else float(value)


def _drop_none(record: Dict[str, Any]) -> Dict[str, Any]:
    return {key: value for key, value in record.items() if value is not None}


_PROFILE_DATE_FIELDS = ('date_of_birth', 'spouse_date_of_birth')
_PROFILE_CONTRIBUTION_FIELDS = ('retirement_contributions', 'spouse_retirement_contributions')


def profile_from_dict(profile_dict: Dict[str, Any]) -> HouseholdProfile:
    """
    Build a HouseholdProfile from its stored camelCase form.

    Unknown keys are ignored; ``null`` values stay unset.

    Args:
        profile_dict: Stored profile, e.g. ``{"dateOfBirth": "1960-05-01", ...}``

    Returns:
        HouseholdProfile object
    """
    key_map = _camel_keys(HouseholdProfile)
    values = {}

    for key, value in profile_dict.items():
        name = key_map.get(key)
        if name is None or value is None:
            continue

        if name in _PROFILE_DATE_FIELDS:
            value = _parse_date(value)
        elif name in _PROFILE_CONTRIBUTION_FIELDS:
            value = RetirementContributions(
                employee=_safe_float(value.get('employee')),
                employer=_safe_float(value.get('employer')),
            )
        elif name == 'assets':
            value = [
                AssetHolding(
                    type=asset.get('type') or '',
                    value=asset.get('value'),
                    owner=asset.get('owner'),
                    description=asset.get('description'),
                )
                for asset in value
            ]
        values[name] = value

    return HouseholdProfile(**values)


def profile_to_dict(profile: HouseholdProfile) -> Dict[str, Any]:
    """
    Convert a HouseholdProfile to its stored camelCase form.

    Args:
        profile: HouseholdProfile object

    Returns:
        JSON-serializable dictionary; unset fields are omitted
    """
    profile_dict = {}

    for name, value in asdict(profile).items():
        if value is None:
            continue
        if name in _PROFILE_DATE_FIELDS:
            value = value.isoformat()
        elif name == 'assets':
            value = [_drop_none(asset) for asset in value]
        profile_dict[_to_camel(name)] = value

    return profile_dict


def save_profile_json(profile: HouseholdProfile, filepath: str) -> None:
    """Save a household profile to a JSON file"""
    with open(filepath, 'w') as f:
        json.dump(profile_to_dict(profile), f, indent=2)


def load_profile_json(filepath: str) -> HouseholdProfile:
    """
    Load a household profile from a JSON file.

    Args:
        filepath: Path to JSON file

    Returns:
        HouseholdProfile object
    """
    with open(filepath, 'r') as f:
        profile_dict = json.load(f)

    return profile_from_dict(profile_dict)


def optimization_variables_from_dict(variables_dict: Optional[Dict[str, Any]]) -> OptimizationVariables:
    """
    Parse a camelCase what-if payload.

    ``null`` values and unknown keys are treated as absent.
    """
    if not variables_dict:
        return OptimizationVariables()

    key_map = _camel_keys(OptimizationVariables)
    values = {
        key_map[key]: value
        for key, value in variables_dict.items()
        if key in key_map and value is not None
    }
    return OptimizationVariables(**values)


def projection_year_to_dict(projection: WithdrawalSequenceYear) -> Dict[str, Any]:
    """One ledger entry in the consumer's camelCase shape"""
    record = {}
    for name, value in asdict(projection).items():
        if name == 'portfolio_balance':
            value = _drop_none(value)
        record[_to_camel(name)] = value
    return _drop_none(record)


def summary_to_dict(summary: SummaryStatistics) -> Dict[str, Any]:
    return _drop_none({_to_camel(name): value for name, value in asdict(summary).items()})


def withdrawal_sequence_to_dict(result: WithdrawalSequenceResult) -> Dict[str, Any]:
    """
    Convert a withdrawal sequence result to the format-stable consumer shape.

    Args:
        result: WithdrawalSequenceResult object

    Returns:
        ``{"projections": [...], "monteCarloSummary": {...}}``
    """
    return {
        'projections': [projection_year_to_dict(p) for p in result.projections],
        'monteCarloSummary': summary_to_dict(result.summary),
    }


def create_withdrawal_sequence_download_json(result: WithdrawalSequenceResult) -> str:
    """JSON string for downloading a withdrawal sequence result"""
    return json.dumps(withdrawal_sequence_to_dict(result), indent=2)


def export_withdrawal_sequence_csv(projections: Sequence[WithdrawalSequenceYear]) -> str:
    """
    Export the year-by-year withdrawal ledger to CSV string.

    The nested portfolio balance band is flattened into ``portfolio_p*`` columns.

    Args:
        projections: Ledger entries

    Returns:
        CSV string
    """
    rows = []
    for projection in projections:
        row = asdict(projection)
        band = row.pop('portfolio_balance')
        for key, value in band.items():
            row[f'portfolio_{key}'] = value
        rows.append(row)

    df = pd.DataFrame(rows)
    return df.to_csv(index=False)


def export_percentile_bands_csv(bands: Sequence[YearlyPercentileBand],
                                start_age: Optional[int] = None) -> str:
    """
    Export yearly percentile bands to CSV string.

    Args:
        bands: Bands indexed by years since the current age
        start_age: If given, an ``age`` column is added (start_age + index)

    Returns:
        CSV string
    """
    df = pd.DataFrame([asdict(band) for band in bands])
    df.insert(0, 'year_index', range(len(bands)))
    if start_age is not None:
        df.insert(1, 'age', [start_age + idx for idx in range(len(bands))])

    return df.to_csv(index=False)


def format_currency(value: float,
                    currency_format: str = "real",
                    precision: int = 0) -> str:
    """
    Format currency values for display.

    Args:
        value: Numeric value to format
        currency_format: "real" or "nominal"
        precision: Number of decimal places

    Returns:
        Formatted string, e.g. "$1.2M (real)"
    """
    sign = "-" if value < 0 else ""
    magnitude = abs(value)

    if magnitude >= 1_000_000:
        formatted = f"{sign}${magnitude/1_000_000:.{precision}f}M"
    elif magnitude >= 1_000:
        formatted = f"{sign}${magnitude/1_000:.{precision}f}K"
    else:
        formatted = f"{sign}${magnitude:.{precision}f}"

    suffix = " (real)" if currency_format == "real" else " (nominal)"
    return formatted + suffix
