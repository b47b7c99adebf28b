"""
Configuration file support for the arrayde CLI.

Supports YAML and JSON config files with CLI argument override. A full
config looks like::

    accession: GSE1234
    platform: bead
    raw: data/raw
    metadata: data/GSE1234_samples.tsv
    annotation: data/GPL6947.annot.tsv
    output: results/GSE1234.de.tsv
    correction:
      background: normexp
      normalization: quantile
      offset: 16
    cleaning:
      filter_low_expression: true
      quantile: 0.25
    groups:
      fields: [title, source_name]
      default: exclude
      exclude: [exclude]
      rules:
        - {pattern: "subtype A", label: case_A}
        - {pattern: "subtype B", label: case_B}
        - {pattern: "normal|healthy", label: control, regex: true}
    contrasts:
      A_vs_ctrl: case_A-control
      AB_vs_ctrl: (case_A+case_B)/2-control
    decision:
      p_value: 0.05
      lfc: 1.0
"""

import json
from argparse import Namespace
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml

from arrayde.io.adapters import Platform
from arrayde.stats.correction import BackgroundMethod

VALID_NORMALIZATIONS = ['quantile', 'loess+scale', 'loess', 'scale', 'none']
VALID_FDR_METHODS = ['BH', 'BY', 'bonferroni']

# config section, config key, argparse dest
_ARG_MAPPINGS = [
    (None, 'accession', 'accession'),
    (None, 'platform', 'platform'),
    (None, 'raw', 'raw'),
    (None, 'metadata', 'metadata'),
    (None, 'annotation', 'annotation'),
    (None, 'output', 'output'),
    (None, 'jobs', 'jobs'),
    ('correction', 'background', 'background'),
    ('correction', 'normalization', 'normalization'),
    ('correction', 'offset', 'offset'),
    ('cleaning', 'filter_low_expression', 'filter_low_expression'),
    ('cleaning', 'quantile', 'low_expression_quantile'),
    ('decision', 'p_value', 'p_value'),
    ('decision', 'lfc', 'lfc'),
    ('decision', 'fdr_method', 'fdr_method'),
]

_PATH_ARGS = {'raw', 'metadata', 'annotation', 'output'}

# Options whose dest differs from the flag name
_FLAG_DESTS = {
    'contrast': 'contrasts',
    'no_low_expression_filter': 'filter_low_expression',
    'low_expression_quantile': 'low_expression_quantile',
}


def load_config(config_path: Path) -> Dict[str, Any]:
    """
    Load configuration from YAML or JSON file.

    Parameters:
        config_path: Path to config file (.yaml, .yml, or .json)

    Returns:
        Dictionary with configuration values

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If file format is unsupported or invalid
    """
    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()
    if suffix not in ('.yaml', '.yml', '.json'):
        raise ValueError(f"Unsupported config format: {suffix}. Use .yaml, .yml, or .json")

    try:
        with open(config_path, 'r') as f:
            if suffix == '.json':
                config = json.load(f)
            else:
                config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid YAML in config file: {e}") from e
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}") from e

    if config is None:
        return {}
    if not isinstance(config, dict):
        raise ValueError("Config file must contain a mapping at top level")
    return config


def _explicit_args(cli_args: Optional[List[str]]) -> set:
    """Argparse dests the user typed on the command line."""
    explicit = set()
    for arg in cli_args or []:
        if not arg.startswith('--'):
            continue
        name = arg[2:].split('=', 1)[0].replace('-', '_')
        explicit.add(_FLAG_DESTS.get(name, name))
    return explicit


def _merge_value(cli_value: Any, config_value: Any, was_explicitly_set: bool) -> Any:
    """Explicit CLI value > config value > CLI default."""
    if was_explicitly_set:
        return cli_value
    if config_value is not None:
        return config_value
    return cli_value


def merge_config_with_args(config: Dict[str, Any], args: Namespace, cli_args: Optional[List[str]] = None) -> Namespace:
    """
    Merge config file values with CLI arguments.

    Priority (highest to lowest):
    1. Explicitly provided CLI arguments
    2. Config file values
    3. CLI argument defaults

    ``groups`` and ``contrasts`` sections are carried over as
    ``args.groups`` / ``args.contrasts``; contrasts given with --contrast
    replace the config list, and --group rules replace the config rules.

    Parameters:
        config: Configuration dictionary from load_config()
        args: Parsed CLI arguments
        cli_args: Raw CLI arguments (for detecting explicit values). If
            None, every CLI value is treated as a default.

    Returns:
        New Namespace with merged values
    """
    explicit = _explicit_args(cli_args)
    merged = Namespace(**vars(args))

    for section, key, dest in _ARG_MAPPINGS:
        source = config.get(section, {}) if section else config
        if not isinstance(source, dict) or key not in source:
            continue
        value = source[key]
        if value is not None and dest in _PATH_ARGS:
            value = Path(value)
        setattr(merged, dest, _merge_value(getattr(merged, dest, None), value, dest in explicit))

    config_contrasts = config.get('contrasts')
    if isinstance(config_contrasts, dict):
        config_contrasts = [f"{name}={expr}" for name, expr in config_contrasts.items()]
    merged.contrasts = _merge_value(
        getattr(merged, 'contrasts', None) or None,
        config_contrasts,
        'contrasts' in explicit,
    )

    groups = dict(config.get('groups') or {})
    if getattr(args, 'group', None):
        groups['rules'] = [_rule_from_flag(flag) for flag in args.group]
    if getattr(args, 'default_group', None) is not None:
        groups['default'] = args.default_group
    if getattr(args, 'group_field', None):
        groups['fields'] = list(args.group_field)
    if getattr(args, 'exclude_group', None):
        groups['exclude'] = list(args.exclude_group)
    merged.groups = groups

    return merged


def _rule_from_flag(flag: str) -> Dict[str, Any]:
    """``PATTERN=LABEL`` (substring) or ``re:PATTERN=LABEL`` (regex)."""
    pattern, sep, label = flag.rpartition('=')
    if not sep or not pattern or not label:
        raise ValueError(f"Group rule must be PATTERN=LABEL, got {flag!r}")
    if pattern.startswith('re:'):
        return {'pattern': pattern[3:], 'label': label, 'regex': True}
    return {'pattern': pattern, 'label': label}


def validate_config(config: Dict[str, Any]) -> None:
    """
    Validate configuration structure and values.

    Raises:
        ValueError: If configuration is invalid
    """
    if 'platform' in config:
        Platform.parse(config['platform'])

    correction = config.get('correction') or {}
    if 'background' in correction and correction['background'] is not None:
        valid = [m.value for m in BackgroundMethod]
        if correction['background'] not in valid:
            raise ValueError(
                f"Invalid background method '{correction['background']}'. "
                f"Choose from: {', '.join(valid)}"
            )
    if 'normalization' in correction and correction['normalization'] is not None:
        if correction['normalization'] not in VALID_NORMALIZATIONS:
            raise ValueError(
                f"Invalid normalization method '{correction['normalization']}'. "
                f"Choose from: {', '.join(VALID_NORMALIZATIONS)}"
            )
    if correction.get('offset') is not None:
        offset = correction['offset']
        if not isinstance(offset, (int, float)) or offset < 0:
            raise ValueError(f"Background offset must be a non-negative number, got: {offset}")

    cleaning = config.get('cleaning') or {}
    if 'quantile' in cleaning:
        q = cleaning['quantile']
        if not isinstance(q, (int, float)) or not 0 <= q <= 1:
            raise ValueError(f"Low-expression quantile must be in [0, 1], got: {q}")

    decision = config.get('decision') or {}
    if 'p_value' in decision:
        p = decision['p_value']
        if not isinstance(p, (int, float)) or not 0 < p <= 1:
            raise ValueError(f"Decision p_value must be in (0, 1], got: {p}")
    if 'lfc' in decision:
        lfc = decision['lfc']
        if not isinstance(lfc, (int, float)) or lfc < 0:
            raise ValueError(f"Decision lfc must be a non-negative number, got: {lfc}")
    if 'fdr_method' in decision and decision['fdr_method'] not in VALID_FDR_METHODS:
        raise ValueError(
            f"Invalid FDR method '{decision['fdr_method']}'. "
            f"Choose from: {', '.join(VALID_FDR_METHODS)}"
        )

    groups = config.get('groups')
    if groups is not None:
        if not isinstance(groups, dict):
            raise ValueError("'groups' section must be a mapping")
        rules = groups.get('rules', [])
        if not isinstance(rules, list):
            raise ValueError("'groups.rules' must be a list")
        for i, rule in enumerate(rules):
            if not isinstance(rule, dict) or 'pattern' not in rule or 'label' not in rule:
                raise ValueError(f"Group rule {i} must be a mapping with 'pattern' and 'label'")
        for key in ('fields', 'field', 'exclude'):
            value = groups.get(key)
            if value is None or isinstance(value, str):
                continue
            if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
                raise ValueError(f"'groups.{key}' must be a name or a list of names, got: {value!r}")

    contrasts = config.get('contrasts')
    if contrasts is not None and not isinstance(contrasts, (list, dict)):
        raise ValueError("'contrasts' must be a list of expressions or a name: expression mapping")
