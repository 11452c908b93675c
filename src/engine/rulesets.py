# src/engine/rulesets.py
"""
RuleSetResolver: turns a job's configured rule ids (or a project's languages)
into the enabled rule definitions and renders them as a semgrep config file.
"""
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import yaml

from engine.errors import RuleResolutionError
from engine.models import Rule

PATTERN_KEYS = (
    "pattern", "patterns", "pattern-either", "pattern-regex",
    "pattern-sources", "pattern-sinks", "mode",
)
VALID_SEVERITIES = ("INFO", "WARNING", "ERROR")


@dataclass
class RuleDefinition:
    rule_id: str
    languages: List[str]
    severity: str
    category: str
    message: str
    patterns: List[dict] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)
    fix_suggestion: Optional[str] = None

    @classmethod
    def from_model(cls, rule: Rule):
        return cls(
            rule_id=rule.rule_id,
            languages=list(rule.languages or []),
            severity=rule.severity or "WARNING",
            category=rule.category or "correctness",
            message=rule.message,
            patterns=list(rule.patterns or []),
            metadata=dict(rule.rule_metadata or {}),
            fix_suggestion=rule.fix_suggestion,
        )

    def to_engine_config(self) -> dict:
        config = {
            "id": self.rule_id,
            "languages": self.languages,
            "message": self.message,
            "severity": self.severity,
        }
        patterns = [p if isinstance(p, dict) else {"pattern": p} for p in self.patterns]
        keys = [key for p in patterns for key in p]
        top_level = (
            all(len(p) == 1 for p in patterns)
            and all(key in PATTERN_KEYS for key in keys)
            and len(set(keys)) == len(keys)
        )
        if top_level:
            # stored as top-level operators (pattern / pattern-either / taint mode ...)
            for p in patterns:
                config.update(p)
        else:
            config["patterns"] = patterns
        config["metadata"] = {**self.metadata, "category": self.category}
        return config


def match_rule(check_id: str, rules_by_id: Dict[str, RuleDefinition]) -> Optional[RuleDefinition]:
    """
    semgrep prefixes rule ids with the dotted path of the config file they came
    from, e.g. `tmp.scan-abc.no-eval` for rule `no-eval`.
    """
    if not check_id:
        return None
    if check_id in rules_by_id:
        return rules_by_id[check_id]
    for rule_id, rule in rules_by_id.items():
        if check_id.endswith("." + rule_id):
            return rule
    return None


class RuleSetResolver:
    def __init__(self, session_factory):
        self._session_factory = session_factory

    def resolve(self, rule_ids: List[str] = None, languages: List[str] = None) -> List[RuleDefinition]:
        with self._session_factory() as db:
            if rule_ids:
                rows = db.query(Rule).filter(Rule.rule_id.in_(rule_ids), Rule.enabled.is_(True)).all()
                by_id = {row.rule_id: row for row in rows}
                # keep the configured order, drop repeats
                rules = [by_id[rule_id] for rule_id in dict.fromkeys(rule_ids) if rule_id in by_id]
            elif languages:
                wanted = {language.lower() for language in languages}
                rows = db.query(Rule).filter(Rule.enabled.is_(True)).order_by(Rule.rule_id).all()
                rules = [row for row in rows if wanted & {lang.lower() for lang in row.languages or []}]
            else:
                rules = []

        if not rules:
            raise RuleResolutionError(
                "No enabled rules found for scan",
                rule_ids=list(rule_ids or []),
                languages=list(languages or []),
            )
        return [RuleDefinition.from_model(rule) for rule in rules]

    def find_rule(self, check_id: str) -> Optional[RuleDefinition]:
        with self._session_factory() as db:
            rows = db.query(Rule).all()
        return match_rule(check_id, {row.rule_id: RuleDefinition.from_model(row) for row in rows})

    def render(self, rules: List[RuleDefinition], path) -> str:
        config = {"rules": [rule.to_engine_config() for rule in rules]}
        with open(path, "w") as f:
            yaml.safe_dump(config, f, sort_keys=False)
        return str(path)

    def load_rules_file(self, path, source: str = "imported") -> int:
        """
        Seed the rule catalogue from a semgrep-style YAML file. Existing rules with
        the same id are replaced.
        """
        with open(path, "r") as f:
            data = yaml.safe_load(f) or {}
        entries = data.get("rules", []) if isinstance(data, dict) else []

        count = 0
        with self._session_factory() as db:
            for entry in entries:
                if not isinstance(entry, dict) or not entry.get("id") or not entry.get("message"):
                    logging.warning(f"Skipping invalid rule entry in {path}: {entry!r:.200}")
                    continue
                metadata = dict(entry.get("metadata") or {})
                severity = str(entry.get("severity", "WARNING")).upper()
                db.merge(Rule(
                    rule_id=entry["id"],
                    name=metadata.pop("name", entry["id"]),
                    languages=list(entry.get("languages") or []),
                    severity=severity if severity in VALID_SEVERITIES else "WARNING",
                    category=metadata.pop("category", "correctness"),
                    message=entry["message"],
                    patterns=[{key: entry[key]} for key in PATTERN_KEYS if key in entry],
                    rule_metadata=metadata,
                    fix_suggestion=entry.get("fix"),
                    source=source,
                    enabled=bool(entry.get("enabled", True)),
                ))
                count += 1
            db.commit()
        logging.info(f"Loaded {count} rules from {path}")
        return count
