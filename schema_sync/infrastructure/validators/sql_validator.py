"""SQL validation services."""

import re
from typing import List, Optional, Tuple

import sqlparse
from sqlparse import tokens as T

from schema_sync.domain.entities.dialect import Dialect, capabilities_for
from schema_sync.domain.entities.evolution import PlannedStatement
from schema_sync.domain.repositories.interfaces import IStatementValidator

_ALLOWED_VERBS = {"CREATE", "ALTER", "DROP", "INSERT", "UPDATE", "RENAME"}

# Statement shapes that need a capability flag to be executable.
_CAPABILITY_PATTERNS = [
    (re.compile(r"\bALTER\s+COLUMN\b.*\bTYPE\b", re.I | re.S), "alter_column_type", "ALTER COLUMN ... TYPE"),
    (re.compile(r"\bALTER\s+COLUMN\b.*\b(SET|DROP)\s+NOT\s+NULL\b", re.I | re.S),
     "alter_column_nullability", "ALTER COLUMN ... NOT NULL"),
    (re.compile(r"^\s*ALTER\s+TABLE\b.*\bADD\s+(CONSTRAINT|PRIMARY|UNIQUE|FOREIGN|CHECK)\b", re.I | re.S),
     "add_constraint", "ADD CONSTRAINT"),
    (re.compile(r"^\s*ALTER\s+TABLE\b.*\bDROP\s+(CONSTRAINT|PRIMARY\s+KEY|FOREIGN\s+KEY|CHECK)\b", re.I | re.S),
     "drop_constraint", "DROP CONSTRAINT"),
]


class SQLValidator(IStatementValidator):
    """
    Validates SQL statements.
    Single Responsibility: SQL validation.
    """

    def __init__(self, dialect="postgres"):
        self._dialect = Dialect.parse(dialect)

    def validate_syntax(self, sql: str) -> Tuple[bool, Optional[str]]:
        """
        Validate SQL syntax.
        Returns (is_valid, error_message).
        """
        statements = [s for s in sqlparse.split(sql) if s.strip()]
        if not statements:
            return False, "Empty SQL statement"
        if len(statements) > 1:
            return False, f"Expected one statement, found {len(statements)}"

        parsed = sqlparse.parse(statements[0])[0]
        first = parsed.token_first(skip_ws=True, skip_cm=True)
        verb = first.value.upper() if first is not None else ""
        if verb not in _ALLOWED_VERBS:
            return False, f"Unexpected statement type '{verb or parsed.get_type()}'"

        flat = [t for t in parsed.flatten() if not t.is_whitespace]
        tokens = [t.value.upper() for t in flat]
        if "DROP" in tokens and "DATABASE" in tokens:
            return False, "DROP DATABASE is not allowed"
        if "TRUNCATE" in tokens:
            return False, "TRUNCATE requires explicit approval"
        # literals, quoted identifiers and comments lex as other token types
        punctuation = [t.value for t in flat if t.ttype in T.Punctuation]
        if punctuation.count("(") != punctuation.count(")"):
            return False, "Unbalanced parentheses"
        return True, None

    def validate_statement(self, sql: str, dialect=None) -> List[str]:
        """Syntax problems plus DDL forms the dialect cannot run."""
        dialect = Dialect.parse(dialect or self._dialect)
        problems = []
        valid, error = self.validate_syntax(sql)
        if not valid:
            problems.append(error)

        caps = capabilities_for(dialect)
        for pattern, capability, label in _CAPABILITY_PATTERNS:
            if pattern.search(sql) and not caps.supports(capability):
                problems.append(f"{dialect.value} does not support {label}")
        if dialect is not Dialect.MYSQL and re.search(r"\bMODIFY\s+COLUMN\b", sql, re.I):
            problems.append(f"{dialect.value} does not support MODIFY COLUMN")
        if dialect is not Dialect.MYSQL and "`" in sql:
            problems.append(f"{dialect.value} does not quote identifiers with backticks")
        return problems

    def validate_safety(self, statement: PlannedStatement) -> Tuple[bool, List[str]]:
        """
        Check if a statement is safe to execute unattended.
        Returns (is_safe, list_of_warnings).
        """
        warnings = []
        if statement.destructive:
            warnings.append(f"Destructive operation: {statement.description or statement.sql}")
        if statement.heavy:
            warnings.append(f"Heavy operation, may lock the table: {statement.description or statement.sql}")
        if not statement.reversible:
            warnings.append(f"Irreversible operation: {statement.description or statement.sql}")
        return not warnings, warnings
