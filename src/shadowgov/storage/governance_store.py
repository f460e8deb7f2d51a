"""Relational store for governance entities.

``GovernanceStore`` owns the schema and exposes typed row operations. It
returns plain dict rows; the governance package converts them into its
dataclasses. The atomic primitives the engine relies on live here:

- ``INSERT OR IGNORE`` followed by a read-back for first-vote section draws,
  so racing first votes converge on one stored draw;
- ``UPDATE ... WHERE status = ?`` compare-and-swap for poll, stake and
  rollback transitions, reported through ``rows_affected``;
- a versioned conditional decrement for founder rollback tokens.
"""

import json
import logging
from contextlib import contextmanager
from typing import Any, Dict, Iterable, Iterator, List, Optional

from .database import DatabaseConfig, QueryResult, SQLiteBackend

logger = logging.getLogger(__name__)

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS constitutional_articles (
        article_number INTEGER PRIMARY KEY,
        title TEXT NOT NULL,
        summary TEXT NOT NULL,
        protected_rules TEXT NOT NULL,
        requires_founder_approval INTEGER NOT NULL,
        requires_ninety_percent INTEGER NOT NULL,
        minimum_discussion_days INTEGER NOT NULL,
        status TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS parameters (
        name TEXT PRIMARY KEY,
        category TEXT NOT NULL,
        value_type TEXT NOT NULL,
        min_value REAL,
        max_value REAL,
        default_value TEXT,
        current_value TEXT,
        description TEXT,
        requires_supermajority INTEGER NOT NULL,
        minimum_duration_days REAL NOT NULL,
        requires_verification INTEGER NOT NULL,
        quorum_model TEXT NOT NULL,
        quorum_absolute REAL NOT NULL,
        quorum_percentage REAL NOT NULL,
        is_voteable INTEGER NOT NULL,
        is_emergency_parameter INTEGER NOT NULL,
        rollback_count INTEGER NOT NULL DEFAULT 0,
        frozen_until REAL,
        updated_at REAL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS polls (
        poll_id TEXT PRIMARY KEY,
        kind TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL,
        creator_id TEXT NOT NULL,
        status TEXT NOT NULL,
        quorum_model TEXT NOT NULL,
        quorum_absolute REAL NOT NULL,
        quorum_percentage REAL NOT NULL,
        requires_supermajority INTEGER NOT NULL,
        early_close INTEGER NOT NULL,
        parameter_name TEXT,
        proposed_value TEXT,
        previous_value TEXT,
        opens_at REAL NOT NULL,
        closes_at REAL NOT NULL,
        outcome TEXT,
        created_at REAL NOT NULL,
        quorum_reached_at REAL,
        closed_at REAL,
        resolved_at REAL,
        rollback_window_expires_at REAL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_polls_status ON polls(status, closes_at)",
    """
    CREATE TABLE IF NOT EXISTS section_draws (
        poll_id TEXT NOT NULL REFERENCES polls(poll_id),
        voter_id TEXT NOT NULL,
        identity_mode TEXT NOT NULL,
        section_index INTEGER NOT NULL,
        multiplier REAL NOT NULL,
        drawn_at REAL NOT NULL,
        PRIMARY KEY (poll_id, voter_id, identity_mode)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS votes (
        vote_id TEXT PRIMARY KEY,
        poll_id TEXT NOT NULL REFERENCES polls(poll_id),
        voter_id TEXT NOT NULL,
        identity_mode TEXT NOT NULL,
        section_index INTEGER NOT NULL,
        multiplier REAL NOT NULL,
        choice TEXT NOT NULL,
        delegated_weight REAL NOT NULL,
        effective_weight REAL NOT NULL,
        cast_at REAL NOT NULL,
        displayed_at REAL NOT NULL,
        change_count INTEGER NOT NULL DEFAULT 0,
        reasoning TEXT,
        UNIQUE (poll_id, voter_id, identity_mode)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vote_delegators (
        vote_id TEXT NOT NULL REFERENCES votes(vote_id),
        delegator_id TEXT NOT NULL,
        PRIMARY KEY (vote_id, delegator_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS vote_history (
        vote_id TEXT NOT NULL REFERENCES votes(vote_id),
        version INTEGER NOT NULL,
        choice TEXT NOT NULL,
        effective_weight REAL NOT NULL,
        displayed_at REAL NOT NULL,
        recorded_at REAL NOT NULL,
        PRIMARY KEY (vote_id, version)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS delegations (
        delegation_id TEXT PRIMARY KEY,
        delegator_id TEXT NOT NULL,
        delegate_id TEXT NOT NULL,
        identity_mode TEXT NOT NULL,
        created_at REAL NOT NULL,
        revoked_at REAL,
        scope TEXT NOT NULL DEFAULT 'all_governance',
        target_poll_id TEXT,
        active_until REAL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_delegations_active
    ON delegations(delegator_id, identity_mode) WHERE revoked_at IS NULL
    """,
    """
    CREATE TABLE IF NOT EXISTS stakes (
        stake_id TEXT PRIMARY KEY,
        poll_id TEXT NOT NULL REFERENCES polls(poll_id),
        user_id TEXT NOT NULL,
        identity_mode TEXT NOT NULL,
        predicted_outcome TEXT NOT NULL,
        amount INTEGER NOT NULL,
        status TEXT NOT NULL,
        payout INTEGER NOT NULL DEFAULT 0,
        created_at REAL NOT NULL,
        settled_at REAL,
        UNIQUE (poll_id, user_id, identity_mode)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS founder_allowance (
        founder_id TEXT PRIMARY KEY,
        tokens_remaining INTEGER NOT NULL CHECK (tokens_remaining >= 0),
        tokens_granted INTEGER NOT NULL,
        version INTEGER NOT NULL DEFAULT 0,
        granted_at REAL NOT NULL,
        expires_at REAL NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS rollback_actions (
        action_id TEXT PRIMARY KEY,
        poll_id TEXT NOT NULL REFERENCES polls(poll_id),
        tier TEXT NOT NULL,
        status TEXT NOT NULL,
        window_expires_at REAL NOT NULL,
        authority_snapshot TEXT,
        detection_event TEXT,
        reason TEXT,
        created_at REAL NOT NULL,
        executed_at REAL
    )
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS idx_rollback_executed
    ON rollback_actions(poll_id) WHERE status = 'executed'
    """,
    """
    CREATE TABLE IF NOT EXISTS rollback_signatures (
        action_id TEXT NOT NULL REFERENCES rollback_actions(action_id),
        user_id TEXT NOT NULL,
        signed_at REAL NOT NULL,
        PRIMARY KEY (action_id, user_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shadow_consensus (
        poll_id TEXT PRIMARY KEY REFERENCES polls(poll_id),
        true_self_yes_pct REAL NOT NULL,
        shadow_yes_pct REAL NOT NULL,
        gap REAL NOT NULL,
        computed_at REAL NOT NULL,
        true_self_ballots INTEGER NOT NULL,
        shadow_ballots INTEGER NOT NULL,
        confidence_interval REAL NOT NULL,
        interpretation TEXT NOT NULL,
        trend TEXT NOT NULL
    )
    """,
]


def _insert_sql(table: str, row: Dict[str, Any], verb: str = "INSERT") -> str:
    columns = ", ".join(row)
    placeholders = ", ".join(f":{c}" for c in row)
    return f"{verb} INTO {table} ({columns}) VALUES ({placeholders})"


class GovernanceStore:
    """Typed row operations over the governance schema."""

    def __init__(self, config: Optional[DatabaseConfig] = None):
        self.config = config or DatabaseConfig()
        self.backend = SQLiteBackend(self.config, schema=SCHEMA)

    def open(self) -> "GovernanceStore":
        self.backend.connect()
        return self

    def close(self) -> None:
        self.backend.disconnect()

    @contextmanager
    def transaction(self) -> Iterator["GovernanceStore"]:
        with self.backend.transaction():
            yield self

    def _query(self, sql: str, params: Any = None) -> QueryResult:
        return self.backend.execute_query(sql, params)

    def _one(self, sql: str, params: Any = None) -> Optional[Dict[str, Any]]:
        return self._query(sql, params).first()

    def _compare_and_set(
        self,
        table: str,
        key_column: str,
        key: str,
        expected_status: str,
        new_status: str,
        fields: Dict[str, Any],
    ) -> bool:
        assignments = ["status = :new_status"] + [f"{c} = :{c}" for c in fields]
        params = dict(fields)
        params.update(
            {"new_status": new_status, "expected_status": expected_status, "key": key}
        )
        result = self._query(
            f"UPDATE {table} SET {', '.join(assignments)} "
            f"WHERE {key_column} = :key AND status = :expected_status",
            params,
        )
        return result.rows_affected == 1

    # Constitutional articles

    def seed_article(self, row: Dict[str, Any]) -> bool:
        row = dict(row, protected_rules=json.dumps(row["protected_rules"]))
        return (
            self._query(_insert_sql("constitutional_articles", row, "INSERT OR IGNORE"), row)
            .rows_affected
            == 1
        )

    def list_articles(self) -> List[Dict[str, Any]]:
        rows = self._query(
            "SELECT * FROM constitutional_articles ORDER BY article_number"
        ).rows
        for row in rows:
            row["protected_rules"] = json.loads(row["protected_rules"])
        return rows

    # Parameter whitelist

    def seed_parameter(self, row: Dict[str, Any]) -> bool:
        return (
            self._query(_insert_sql("parameters", row, "INSERT OR IGNORE"), row).rows_affected
            == 1
        )

    def get_parameter(self, name: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM parameters WHERE name = ?", (name,))

    def list_parameters(self) -> List[Dict[str, Any]]:
        return self._query("SELECT * FROM parameters ORDER BY category, name").rows

    def set_parameter_value(self, name: str, encoded_value: str, at: float) -> bool:
        result = self._query(
            "UPDATE parameters SET current_value = ?, updated_at = ? WHERE name = ?",
            (encoded_value, at, name),
        )
        return result.rows_affected == 1

    def record_parameter_rollback(
        self,
        name: str,
        encoded_value: str,
        at: float,
        freeze_threshold: int,
        frozen_until: float,
    ) -> Dict[str, Any]:
        """Restore a value, bump the rollback count and freeze at the threshold."""
        self._query(
            """
            UPDATE parameters
            SET current_value = :value,
                updated_at = :at,
                rollback_count = rollback_count + 1,
                frozen_until = CASE
                    WHEN rollback_count + 1 >= :threshold THEN :frozen_until
                    ELSE frozen_until
                END,
                is_voteable = CASE
                    WHEN rollback_count + 1 >= :threshold THEN 0
                    ELSE is_voteable
                END
            WHERE name = :name
            """,
            {
                "value": encoded_value,
                "at": at,
                "threshold": freeze_threshold,
                "frozen_until": frozen_until,
                "name": name,
            },
        )
        return self.get_parameter(name)

    def thaw_parameters(self, now: float) -> int:
        result = self._query(
            """
            UPDATE parameters
            SET is_voteable = 1, frozen_until = NULL, rollback_count = 0
            WHERE frozen_until IS NOT NULL AND frozen_until <= ?
            """,
            (now,),
        )
        return result.rows_affected

    # Polls

    def insert_poll(self, row: Dict[str, Any]) -> None:
        self._query(_insert_sql("polls", row), row)

    def get_poll(self, poll_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM polls WHERE poll_id = ?", (poll_id,))

    def list_polls(self, status: Optional[str] = None) -> List[Dict[str, Any]]:
        if status is None:
            return self._query("SELECT * FROM polls ORDER BY created_at").rows
        return self._query(
            "SELECT * FROM polls WHERE status = ? ORDER BY created_at", (status,)
        ).rows

    def list_polls_due(self, now: float) -> List[Dict[str, Any]]:
        """Open polls past ``closes_at`` or flagged for early close."""
        return self._query(
            """
            SELECT * FROM polls
            WHERE status = 'open' AND (closes_at <= ? OR early_close = 1)
            ORDER BY closes_at
            """,
            (now,),
        ).rows

    def transition_poll(
        self, poll_id: str, expected_status: str, new_status: str, **fields
    ) -> bool:
        return self._compare_and_set(
            "polls", "poll_id", poll_id, expected_status, new_status, fields
        )

    def latch_quorum(self, poll_id: str, at: float) -> bool:
        result = self._query(
            "UPDATE polls SET quorum_reached_at = ? "
            "WHERE poll_id = ? AND quorum_reached_at IS NULL",
            (at, poll_id),
        )
        return result.rows_affected == 1

    # Section draws

    def get_or_create_section_draw(
        self,
        poll_id: str,
        voter_id: str,
        identity_mode: str,
        section_index: int,
        multiplier: float,
        at: float,
    ) -> Dict[str, Any]:
        """Insert the draw if absent, then return whatever is stored."""
        self._query(
            """
            INSERT OR IGNORE INTO section_draws
                (poll_id, voter_id, identity_mode, section_index, multiplier, drawn_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (poll_id, voter_id, identity_mode, section_index, multiplier, at),
        )
        return self.get_section_draw(poll_id, voter_id, identity_mode)

    def get_section_draw(
        self, poll_id: str, voter_id: str, identity_mode: str
    ) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM section_draws "
            "WHERE poll_id = ? AND voter_id = ? AND identity_mode = ?",
            (poll_id, voter_id, identity_mode),
        )

    # Votes

    def insert_vote(self, row: Dict[str, Any]) -> bool:
        """Insert a first ballot; False when one already exists for the key."""
        return (
            self._query(_insert_sql("votes", row, "INSERT OR IGNORE"), row).rows_affected
            == 1
        )

    def update_vote_within_limit(
        self, vote_id: str, max_changes: int, fields: Dict[str, Any]
    ) -> bool:
        """Apply a ballot change only while ``change_count < max_changes``."""
        assignments = ", ".join(f"{c} = :{c}" for c in fields)
        params = dict(fields, vote_id=vote_id, max_changes=max_changes)
        result = self._query(
            f"UPDATE votes SET {assignments}, change_count = change_count + 1 "
            "WHERE vote_id = :vote_id AND change_count < :max_changes",
            params,
        )
        return result.rows_affected == 1

    def get_vote(
        self, poll_id: str, voter_id: str, identity_mode: str
    ) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM votes WHERE poll_id = ? AND voter_id = ? AND identity_mode = ?",
            (poll_id, voter_id, identity_mode),
        )

    def list_votes(self, poll_id: str) -> List[Dict[str, Any]]:
        """Ballots on a poll, each with the ``first_cast_at`` of its version 0."""
        return self._query(
            """
            SELECT v.*, h.recorded_at AS first_cast_at
            FROM votes v
            LEFT JOIN vote_history h ON h.vote_id = v.vote_id AND h.version = 0
            WHERE v.poll_id = ?
            ORDER BY v.vote_id
            """,
            (poll_id,),
        ).rows

    def count_votes(self, poll_id: str) -> int:
        row = self._one("SELECT COUNT(*) AS n FROM votes WHERE poll_id = ?", (poll_id,))
        return row["n"]

    def set_vote_delegators(self, vote_id: str, delegator_ids: Iterable[str]) -> None:
        self._query("DELETE FROM vote_delegators WHERE vote_id = ?", (vote_id,))
        for delegator_id in delegator_ids:
            self._query(
                "INSERT INTO vote_delegators (vote_id, delegator_id) VALUES (?, ?)",
                (vote_id, delegator_id),
            )

    def list_vote_delegators(self, poll_id: str) -> Dict[str, List[str]]:
        rows = self._query(
            """
            SELECT vd.vote_id, vd.delegator_id
            FROM vote_delegators vd JOIN votes v ON v.vote_id = vd.vote_id
            WHERE v.poll_id = ?
            ORDER BY vd.vote_id, vd.delegator_id
            """,
            (poll_id,),
        ).rows
        mapping: Dict[str, List[str]] = {}
        for row in rows:
            mapping.setdefault(row["vote_id"], []).append(row["delegator_id"])
        return mapping

    def insert_vote_history(self, row: Dict[str, Any]) -> None:
        self._query(_insert_sql("vote_history", row), row)

    def list_vote_history(self, vote_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM vote_history WHERE vote_id = ? ORDER BY version", (vote_id,)
        ).rows

    # Delegations

    def insert_delegation(self, row: Dict[str, Any]) -> bool:
        """Insert a delegation; False when the delegator already has an active one."""
        return (
            self._query(_insert_sql("delegations", row, "INSERT OR IGNORE"), row).rows_affected
            == 1
        )

    def get_delegation(self, delegation_id: str) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM delegations WHERE delegation_id = ?", (delegation_id,)
        )

    def list_active_delegations(self, identity_mode: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM delegations WHERE identity_mode = ? AND revoked_at IS NULL "
            "ORDER BY created_at",
            (identity_mode,),
        ).rows

    def active_delegations_to(
        self, delegate_id: str, identity_mode: str
    ) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM delegations "
            "WHERE delegate_id = ? AND identity_mode = ? AND revoked_at IS NULL "
            "ORDER BY delegator_id",
            (delegate_id, identity_mode),
        ).rows

    def active_delegations_from(self, delegator_id: str) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM delegations WHERE delegator_id = ? AND revoked_at IS NULL",
            (delegator_id,),
        ).rows

    def active_delegations_from_mode(
        self, delegator_id: str, identity_mode: str
    ) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM delegations "
            "WHERE delegator_id = ? AND identity_mode = ? AND revoked_at IS NULL",
            (delegator_id, identity_mode),
        ).rows

    def revoke_delegation(self, delegation_id: str, at: float) -> bool:
        result = self._query(
            "UPDATE delegations SET revoked_at = ? "
            "WHERE delegation_id = ? AND revoked_at IS NULL",
            (at, delegation_id),
        )
        return result.rows_affected == 1

    def expire_delegations(self, now: float) -> int:
        """Close delegations whose ``active_until`` has passed, as of that time."""
        result = self._query(
            "UPDATE delegations SET revoked_at = active_until "
            "WHERE revoked_at IS NULL AND active_until IS NOT NULL AND active_until <= ?",
            (now,),
        )
        return result.rows_affected

    # Stakes

    def insert_stake(self, row: Dict[str, Any]) -> bool:
        return (
            self._query(_insert_sql("stakes", row, "INSERT OR IGNORE"), row).rows_affected
            == 1
        )

    def list_stakes(
        self, poll_id: str, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        if status is None:
            return self._query(
                "SELECT * FROM stakes WHERE poll_id = ? ORDER BY created_at, stake_id",
                (poll_id,),
            ).rows
        return self._query(
            "SELECT * FROM stakes WHERE poll_id = ? AND status = ? "
            "ORDER BY created_at, stake_id",
            (poll_id, status),
        ).rows

    def settle_stake(
        self, stake_id: str, new_status: str, payout: int, at: float
    ) -> bool:
        return self._compare_and_set(
            "stakes",
            "stake_id",
            stake_id,
            "active",
            new_status,
            {"payout": payout, "settled_at": at},
        )

    # Founder allowance

    def seed_founder_allowance(
        self, founder_id: str, tokens: int, granted_at: float, expires_at: float
    ) -> bool:
        result = self._query(
            """
            INSERT OR IGNORE INTO founder_allowance
                (founder_id, tokens_remaining, tokens_granted, version, granted_at, expires_at)
            VALUES (?, ?, ?, 0, ?, ?)
            """,
            (founder_id, tokens, tokens, granted_at, expires_at),
        )
        return result.rows_affected == 1

    def get_founder_allowance(self, founder_id: str) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM founder_allowance WHERE founder_id = ?", (founder_id,)
        )

    def consume_founder_token(self, founder_id: str, expected_version: int) -> bool:
        """Decrement one token if the row is still at ``expected_version``."""
        result = self._query(
            """
            UPDATE founder_allowance
            SET tokens_remaining = tokens_remaining - 1, version = version + 1
            WHERE founder_id = ? AND version = ? AND tokens_remaining > 0
            """,
            (founder_id, expected_version),
        )
        return result.rows_affected == 1

    # Rollback actions

    def insert_rollback_action(self, row: Dict[str, Any]) -> None:
        row = dict(row)
        row["authority_snapshot"] = json.dumps(row.get("authority_snapshot") or {})
        if row.get("detection_event") is not None:
            row["detection_event"] = json.dumps(row["detection_event"])
        self._query(_insert_sql("rollback_actions", row), row)

    def get_rollback_action(self, action_id: str) -> Optional[Dict[str, Any]]:
        return self._one(
            "SELECT * FROM rollback_actions WHERE action_id = ?", (action_id,)
        )

    def list_rollback_actions(
        self, poll_id: Optional[str] = None, status: Optional[str] = None
    ) -> List[Dict[str, Any]]:
        clauses, params = [], []
        if poll_id is not None:
            clauses.append("poll_id = ?")
            params.append(poll_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(status)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        return self._query(
            f"SELECT * FROM rollback_actions {where} ORDER BY created_at, action_id",
            params,
        ).rows

    def list_expired_rollback_actions(self, now: float) -> List[Dict[str, Any]]:
        return self._query(
            "SELECT * FROM rollback_actions "
            "WHERE status = 'pending' AND window_expires_at <= ?",
            (now,),
        ).rows

    def transition_rollback_action(
        self, action_id: str, expected_status: str, new_status: str, **fields
    ) -> bool:
        if "authority_snapshot" in fields:
            fields["authority_snapshot"] = json.dumps(fields["authority_snapshot"])
        return self._compare_and_set(
            "rollback_actions", "action_id", action_id, expected_status, new_status, fields
        )

    def add_rollback_signature(self, action_id: str, user_id: str, at: float) -> bool:
        result = self._query(
            "INSERT OR IGNORE INTO rollback_signatures (action_id, user_id, signed_at) "
            "VALUES (?, ?, ?)",
            (action_id, user_id, at),
        )
        return result.rows_affected == 1

    def list_rollback_signers(self, action_id: str) -> List[str]:
        rows = self._query(
            "SELECT user_id FROM rollback_signatures WHERE action_id = ? "
            "ORDER BY signed_at, user_id",
            (action_id,),
        ).rows
        return [row["user_id"] for row in rows]

    # Shadow consensus

    def upsert_consensus_snapshot(self, row: Dict[str, Any]) -> None:
        self._query(_insert_sql("shadow_consensus", row, "INSERT OR REPLACE"), row)

    def get_consensus_snapshot(self, poll_id: str) -> Optional[Dict[str, Any]]:
        return self._one("SELECT * FROM shadow_consensus WHERE poll_id = ?", (poll_id,))
