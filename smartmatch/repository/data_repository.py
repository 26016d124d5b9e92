"""Repository layer responsible for all database access."""

from __future__ import annotations

import json
import sqlite3
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any, Iterator, Optional, Sequence

from smartmatch.domain.models import (
    HISTORY_ASSIGNED,
    HISTORY_UNASSIGNED,
    Assignment,
    BookingRequest,
    BookingStatus,
    FallbackTeamCandidate,
    ForceAssignOutcome,
    Invitation,
    InvitationOutcome,
    InvitationStatus,
    LockOutcome,
    LockStatus,
    MatchingConfig,
    ProviderCandidate,
    ProviderTeam,
    ServiceZone,
    SlotLock,
    TeamMember,
    TimeWindow,
)
from smartmatch.utils.config import Settings, get_settings
from smartmatch.utils.logger import get_logger
from smartmatch.utils.timeutils import from_db_timestamp, to_db_timestamp


logger = get_logger(__name__)

_ACTIVE_LOCKS = "('HELD', 'CONFIRMED')"
_OUTSTANDING_INVITATIONS = "('pending', 'viewed')"
_FIRST_ASSIGNMENT_JOIN = """
                LEFT JOIN assignments AS fa ON fa.id = (
                    SELECT a.id FROM assignments AS a
                    WHERE a.booking_id = b.id
                    ORDER BY a.created_at ASC, a.id ASC
                    LIMIT 1
                )
                LEFT JOIN providers AS p ON p.id = fa.provider_id
"""


def _json_list(value: Optional[str]) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(str(item) for item in json.loads(value))


def _row_to_booking(row: sqlite3.Row) -> BookingRequest:
    return BookingRequest(
        booking_id=str(row["id"]),
        client_id=row["client_id"],
        service_category=str(row["service_category"]),
        eco_preference=str(row["eco_preference"]),
        required_providers=int(row["required_providers"]),
        city=row["city"],
        postal_code=row["postal_code"],
        start_at=from_db_timestamp(row["start_at"]),
        end_at=from_db_timestamp(row["end_at"]),
        status=str(row["status"]),
        latitude=row["latitude"],
        longitude=row["longitude"],
        price_ceiling_cents=row["price_ceiling_cents"],
        matching_retry_count=int(row["matching_retry_count"]),
        short_notice=bool(row["short_notice"]),
        fallback_requested_at=from_db_timestamp(row["fallback_requested_at"]),
        fallback_escalated_at=from_db_timestamp(row["fallback_escalated_at"]),
        fallback_team_candidate_id=row["fallback_team_candidate_id"],
        last_matching_round_at=from_db_timestamp(row["last_matching_round_at"]),
        created_at=from_db_timestamp(row["created_at"]),
        updated_at=from_db_timestamp(row["updated_at"]),
    )


def _row_to_lock(row: sqlite3.Row) -> SlotLock:
    return SlotLock(
        lock_id=int(row["id"]),
        booking_id=str(row["booking_id"]),
        provider_id=row["provider_id"],
        team_id=row["team_id"],
        status=str(row["status"]),
        slot_start_at=from_db_timestamp(row["slot_start_at"]),
        slot_end_at=from_db_timestamp(row["slot_end_at"]),
        created_at=from_db_timestamp(row["created_at"]),
        expires_at=from_db_timestamp(row["expires_at"]),
        released_at=from_db_timestamp(row["released_at"]),
    )


def _row_to_invitation(row: sqlite3.Row) -> Invitation:
    return Invitation(
        invitation_id=int(row["id"]),
        booking_id=str(row["booking_id"]),
        provider_id=str(row["provider_id"]),
        lock_id=row["lock_id"],
        status=str(row["status"]),
        created_at=from_db_timestamp(row["created_at"]),
        expires_at=from_db_timestamp(row["expires_at"]),
        viewed_at=from_db_timestamp(row["viewed_at"]),
        responded_at=from_db_timestamp(row["responded_at"]),
        metadata=json.loads(row["metadata_json"] or "{}"),
    )


def _row_to_assignment(row: sqlite3.Row) -> Assignment:
    return Assignment(
        assignment_id=int(row["id"]),
        booking_id=str(row["booking_id"]),
        provider_id=str(row["provider_id"]),
        source=str(row["source"]),
        created_at=from_db_timestamp(row["created_at"]),
        team_id=row["team_id"],
    )


def _row_to_fallback(row: sqlite3.Row) -> FallbackTeamCandidate:
    return FallbackTeamCandidate(
        candidate_id=int(row["id"]),
        booking_id=str(row["booking_id"]),
        team_id=str(row["team_id"]),
        name=str(row["name"]),
        preferred_size=int(row["preferred_size"]),
        member_ids=_json_list(row["member_ids_json"]),
        total_score=float(row["total_score"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


def _row_to_config(row: sqlite3.Row) -> MatchingConfig:
    team_bonus = json.loads(row["team_bonus_json"])
    policy = json.loads(row["policy_json"])
    return MatchingConfig(
        version=int(row["version"]),
        distance_max_km=float(row["distance_max_km"]),
        weights={str(key): float(value) for key, value in json.loads(row["weights_json"]).items()},
        team_bonus_two=float(team_bonus["two"]),
        team_bonus_three_plus=float(team_bonus["three_plus"]),
        fanout_size=int(policy["fanout_size"]),
        invitation_ttl_minutes=int(policy["invitation_ttl_minutes"]),
        max_retry_attempts=int(policy["max_retry_attempts"]),
        fallback_threshold=int(policy["fallback_threshold"]),
        distance_relaxation_factor=float(policy["distance_relaxation_factor"]),
        short_notice_hours=int(policy["short_notice_hours"]),
        escalation_deadline_hours=int(policy["escalation_deadline_hours"]),
        rating_credibility_reviews=int(policy["rating_credibility_reviews"]),
        created_at=from_db_timestamp(row["created_at"]),
    )


class DataRepository:
    """Encapsulates SQLite access so the matching services stay storage-agnostic.

    Writes that must be atomic against concurrent callers run inside
    `BEGIN IMMEDIATE` transactions, which take the database write lock up
    front and therefore serialize across connections and processes.
    """

    def __init__(self, settings: Optional[Settings] = None) -> None:
        self._settings = settings or get_settings()
        self._db_path = Path(self._settings.database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(
            self._db_path,
            timeout=self._settings.database_busy_timeout_seconds,
        )
        connection.row_factory = sqlite3.Row
        connection.execute("PRAGMA foreign_keys = ON;")
        return connection

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        connection = self._connect()
        try:
            connection.execute("BEGIN IMMEDIATE;")
            yield connection
            connection.commit()
        except BaseException:
            connection.rollback()
            raise
        finally:
            connection.close()

    def initialize_database(self) -> None:
        """Create all persistence artifacts before API startup."""
        try:
            with closing(self._connect()) as conn:
                conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS providers (
                        id TEXT PRIMARY KEY,
                        kind TEXT NOT NULL CHECK (kind IN ('freelancer', 'company')),
                        service_categories_json TEXT NOT NULL,
                        service_areas_json TEXT NOT NULL DEFAULT '[]',
                        offers_eco INTEGER NOT NULL DEFAULT 0,
                        hourly_rate_cents INTEGER NOT NULL CHECK (hourly_rate_cents >= 0),
                        rating_average REAL,
                        rating_count INTEGER NOT NULL DEFAULT 0,
                        reliability REAL,
                        is_active INTEGER NOT NULL DEFAULT 1
                    );

                    CREATE TABLE IF NOT EXISTS provider_service_zones (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        provider_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        city TEXT,
                        district TEXT,
                        postal_code TEXT,
                        latitude REAL,
                        longitude REAL,
                        radius_km REAL,
                        FOREIGN KEY (provider_id) REFERENCES providers(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS provider_teams (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL,
                        preferred_size INTEGER NOT NULL CHECK (preferred_size > 0),
                        service_categories_json TEXT NOT NULL DEFAULT '[]',
                        is_active INTEGER NOT NULL DEFAULT 1
                    );

                    CREATE TABLE IF NOT EXISTS provider_team_members (
                        team_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        is_lead INTEGER NOT NULL DEFAULT 0,
                        order_index INTEGER NOT NULL DEFAULT 0,
                        PRIMARY KEY (team_id, provider_id),
                        FOREIGN KEY (team_id) REFERENCES provider_teams(id) ON DELETE CASCADE,
                        FOREIGN KEY (provider_id) REFERENCES providers(id) ON DELETE CASCADE
                    );

                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        client_id TEXT,
                        service_category TEXT NOT NULL,
                        eco_preference TEXT NOT NULL DEFAULT 'standard',
                        required_providers INTEGER NOT NULL DEFAULT 1 CHECK (required_providers > 0),
                        city TEXT,
                        postal_code TEXT,
                        latitude REAL,
                        longitude REAL,
                        start_at TEXT NOT NULL,
                        end_at TEXT NOT NULL,
                        status TEXT NOT NULL,
                        price_ceiling_cents INTEGER,
                        matching_retry_count INTEGER NOT NULL DEFAULT 0,
                        short_notice INTEGER NOT NULL DEFAULT 0,
                        fallback_requested_at TEXT,
                        fallback_escalated_at TEXT,
                        fallback_team_candidate_id INTEGER,
                        last_matching_round_at TEXT,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS booking_events (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        action TEXT NOT NULL,
                        from_status TEXT,
                        to_status TEXT,
                        reason TEXT,
                        actor_kind TEXT NOT NULL DEFAULT 'system',
                        actor_id TEXT,
                        client_id TEXT,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (booking_id) REFERENCES bookings(id)
                    );

                    CREATE TABLE IF NOT EXISTS slot_locks (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        provider_id TEXT,
                        team_id TEXT,
                        status TEXT NOT NULL CHECK (status IN ('HELD', 'CONFIRMED', 'RELEASED')),
                        slot_start_at TEXT NOT NULL,
                        slot_end_at TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        released_at TEXT,
                        FOREIGN KEY (booking_id) REFERENCES bookings(id)
                    );

                    CREATE TABLE IF NOT EXISTS invitations (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        lock_id INTEGER,
                        status TEXT NOT NULL CHECK (
                            status IN ('pending', 'viewed', 'accepted', 'declined', 'expired')
                        ),
                        created_at TEXT NOT NULL,
                        expires_at TEXT NOT NULL,
                        viewed_at TEXT,
                        responded_at TEXT,
                        metadata_json TEXT NOT NULL DEFAULT '{}',
                        FOREIGN KEY (booking_id) REFERENCES bookings(id),
                        FOREIGN KEY (lock_id) REFERENCES slot_locks(id)
                    );

                    CREATE TABLE IF NOT EXISTS assignments (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        team_id TEXT,
                        source TEXT NOT NULL,
                        created_at TEXT NOT NULL,
                        UNIQUE (booking_id, provider_id),
                        FOREIGN KEY (booking_id) REFERENCES bookings(id)
                    );

                    CREATE TABLE IF NOT EXISTS fallback_team_candidates (
                        id INTEGER PRIMARY KEY AUTOINCREMENT,
                        booking_id TEXT NOT NULL,
                        team_id TEXT NOT NULL,
                        name TEXT NOT NULL,
                        preferred_size INTEGER NOT NULL,
                        member_ids_json TEXT NOT NULL,
                        total_score REAL NOT NULL,
                        created_at TEXT NOT NULL,
                        FOREIGN KEY (booking_id) REFERENCES bookings(id)
                    );

                    CREATE TABLE IF NOT EXISTS matching_config (
                        version INTEGER PRIMARY KEY,
                        distance_max_km REAL NOT NULL,
                        weights_json TEXT NOT NULL,
                        team_bonus_json TEXT NOT NULL,
                        policy_json TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    );

                    CREATE UNIQUE INDEX IF NOT EXISTS uq_invitations_outstanding_pair
                    ON invitations(booking_id, provider_id)
                    WHERE status IN ('pending', 'viewed');

                    CREATE INDEX IF NOT EXISTS idx_invitations_status_expiry
                    ON invitations(status, expires_at);

                    CREATE INDEX IF NOT EXISTS idx_slot_locks_provider_status
                    ON slot_locks(provider_id, status, slot_start_at, slot_end_at);

                    CREATE INDEX IF NOT EXISTS idx_slot_locks_status_expiry
                    ON slot_locks(status, expires_at);

                    CREATE INDEX IF NOT EXISTS idx_bookings_status_start
                    ON bookings(status, start_at);

                    CREATE INDEX IF NOT EXISTS idx_booking_events_created
                    ON booking_events(created_at, action);
                    """
                )
                conn.commit()
            logger.info("Database initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Database initialization failed: {exc}") from exc

    def seed_demo_directory(self) -> None:
        """Seed a small provider directory only when it is empty."""
        try:
            with closing(self._connect()) as conn:
                count = int(conn.execute("SELECT COUNT(*) AS count FROM providers;").fetchone()["count"])
            if count > 0:
                logger.info("Provider directory already present; skipping seed")
                return

            providers = [
                ("prov-anna", "freelancer", ["standard", "deep_clean"], True, 2800, 4.8, 52, 0.97, "Mitte"),
                ("prov-ben", "freelancer", ["standard"], False, 2500, 4.4, 18, 0.92, "Mitte"),
                ("prov-clara", "freelancer", ["standard", "office"], True, 3100, 4.9, 7, None, "Kreuzberg"),
                ("prov-dario", "freelancer", ["standard", "deep_clean"], False, 2600, 4.1, 33, 0.85, "Neukoelln"),
                ("prov-eva", "company", ["standard", "office", "deep_clean"], True, 3400, 4.6, 120, 0.95, "Charlottenburg"),
                ("prov-finn", "freelancer", ["standard", "deep_clean"], True, 2700, 4.5, 21, 0.9, "Friedrichshain"),
            ]
            for provider_id, kind, categories, eco, rate, rating, count, reliability, district in providers:
                self.upsert_provider(
                    ProviderCandidate(
                        provider_id=provider_id,
                        kind=kind,
                        service_categories=tuple(categories),
                        hourly_rate_cents=rate,
                        offers_eco=eco,
                        service_areas=("berlin",),
                        service_zones=(ServiceZone(name=district, city="Berlin", district=district),),
                        rating_average=rating,
                        rating_count=count,
                        reliability=reliability,
                    )
                )
            self.upsert_team(
                ProviderTeam(
                    team_id="team-mitte",
                    name="Team Mitte",
                    preferred_size=3,
                    members=(
                        TeamMember("prov-anna", is_lead=True, order_index=0),
                        TeamMember("prov-ben", order_index=1),
                        TeamMember("prov-clara", order_index=2),
                    ),
                    service_categories=("standard", "deep_clean"),
                )
            )
            self.upsert_team(
                ProviderTeam(
                    team_id="team-east",
                    name="Team East",
                    preferred_size=2,
                    members=(
                        TeamMember("prov-finn", is_lead=True, order_index=0),
                        TeamMember("prov-dario", order_index=1),
                    ),
                )
            )
            logger.info("Demo provider directory seeded with %s providers", len(providers))
        except sqlite3.Error as exc:
            raise RuntimeError(f"Provider directory seeding failed: {exc}") from exc

    # ------------------------------------------------------------------
    # Provider directory
    # ------------------------------------------------------------------

    def upsert_provider(self, candidate: ProviderCandidate, is_active: bool = True) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO providers (
                    id, kind, service_categories_json, service_areas_json, offers_eco,
                    hourly_rate_cents, rating_average, rating_count, reliability, is_active
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    kind = excluded.kind,
                    service_categories_json = excluded.service_categories_json,
                    service_areas_json = excluded.service_areas_json,
                    offers_eco = excluded.offers_eco,
                    hourly_rate_cents = excluded.hourly_rate_cents,
                    rating_average = excluded.rating_average,
                    rating_count = excluded.rating_count,
                    reliability = excluded.reliability,
                    is_active = excluded.is_active;
                """,
                (
                    candidate.provider_id,
                    candidate.kind,
                    json.dumps(list(candidate.service_categories)),
                    json.dumps(list(candidate.service_areas)),
                    int(candidate.offers_eco),
                    candidate.hourly_rate_cents,
                    candidate.rating_average,
                    candidate.rating_count,
                    candidate.reliability,
                    int(is_active),
                ),
            )
            conn.execute(
                "DELETE FROM provider_service_zones WHERE provider_id = ?;",
                (candidate.provider_id,),
            )
            conn.executemany(
                """
                INSERT INTO provider_service_zones (
                    provider_id, name, city, district, postal_code, latitude, longitude, radius_km
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?);
                """,
                [
                    (
                        candidate.provider_id,
                        zone.name,
                        zone.city,
                        zone.district,
                        zone.postal_code,
                        zone.latitude,
                        zone.longitude,
                        zone.radius_km,
                    )
                    for zone in candidate.service_zones
                ],
            )

    def upsert_team(self, team: ProviderTeam) -> None:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO provider_teams (id, name, preferred_size, service_categories_json, is_active)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    name = excluded.name,
                    preferred_size = excluded.preferred_size,
                    service_categories_json = excluded.service_categories_json,
                    is_active = excluded.is_active;
                """,
                (
                    team.team_id,
                    team.name,
                    team.preferred_size,
                    json.dumps(list(team.service_categories)),
                    int(team.is_active),
                ),
            )
            conn.execute("DELETE FROM provider_team_members WHERE team_id = ?;", (team.team_id,))
            conn.executemany(
                """
                INSERT INTO provider_team_members (team_id, provider_id, is_lead, order_index)
                VALUES (?, ?, ?, ?);
                """,
                [
                    (team.team_id, member.provider_id, int(member.is_lead), member.order_index)
                    for member in team.members
                ],
            )

    def list_provider_candidates(
        self,
        service_category: Optional[str] = None,
        eco_required: bool = False,
    ) -> list[ProviderCandidate]:
        """Return active providers, optionally narrowed by category and eco offering."""
        with closing(self._connect()) as conn:
            provider_rows = conn.execute(
                """
                SELECT
                    p.*,
                    COALESCE((
                        SELECT MAX(team_size) FROM (
                            SELECT COUNT(*) AS team_size
                            FROM provider_team_members AS m
                            INNER JOIN provider_teams AS t ON t.id = m.team_id
                            WHERE t.is_active = 1
                              AND m.team_id IN (
                                  SELECT team_id FROM provider_team_members WHERE provider_id = p.id
                              )
                            GROUP BY m.team_id
                        )
                    ), 0) AS team_size
                FROM providers AS p
                WHERE p.is_active = 1
                ORDER BY p.id ASC;
                """
            ).fetchall()
            zone_rows = conn.execute(
                "SELECT * FROM provider_service_zones ORDER BY provider_id ASC, id ASC;"
            ).fetchall()

        zones_by_provider: dict[str, list[ServiceZone]] = {}
        for row in zone_rows:
            zones_by_provider.setdefault(str(row["provider_id"]), []).append(
                ServiceZone(
                    name=str(row["name"]),
                    city=row["city"],
                    district=row["district"],
                    postal_code=row["postal_code"],
                    latitude=row["latitude"],
                    longitude=row["longitude"],
                    radius_km=row["radius_km"],
                )
            )

        candidates: list[ProviderCandidate] = []
        for row in provider_rows:
            categories = _json_list(row["service_categories_json"])
            if service_category is not None and service_category not in categories:
                continue
            if eco_required and not row["offers_eco"]:
                continue
            provider_id = str(row["id"])
            candidates.append(
                ProviderCandidate(
                    provider_id=provider_id,
                    kind=str(row["kind"]),
                    service_categories=categories,
                    hourly_rate_cents=int(row["hourly_rate_cents"]),
                    offers_eco=bool(row["offers_eco"]),
                    service_areas=_json_list(row["service_areas_json"]),
                    service_zones=tuple(zones_by_provider.get(provider_id, [])),
                    rating_average=row["rating_average"],
                    rating_count=int(row["rating_count"]),
                    reliability=row["reliability"],
                    team_size=int(row["team_size"]),
                )
            )
        return candidates

    def list_active_teams(self, service_category: Optional[str] = None) -> list[ProviderTeam]:
        with closing(self._connect()) as conn:
            team_rows = conn.execute(
                "SELECT * FROM provider_teams WHERE is_active = 1 ORDER BY id ASC;"
            ).fetchall()
            member_rows = conn.execute(
                "SELECT * FROM provider_team_members ORDER BY team_id ASC, order_index ASC;"
            ).fetchall()

        members_by_team: dict[str, list[TeamMember]] = {}
        for row in member_rows:
            members_by_team.setdefault(str(row["team_id"]), []).append(
                TeamMember(
                    provider_id=str(row["provider_id"]),
                    is_lead=bool(row["is_lead"]),
                    order_index=int(row["order_index"]),
                )
            )
        teams: list[ProviderTeam] = []
        for row in team_rows:
            categories = _json_list(row["service_categories_json"])
            if service_category is not None and categories and service_category not in categories:
                continue
            team_id = str(row["id"])
            teams.append(
                ProviderTeam(
                    team_id=team_id,
                    name=str(row["name"]),
                    preferred_size=int(row["preferred_size"]),
                    members=tuple(members_by_team.get(team_id, [])),
                    service_categories=categories,
                    is_active=True,
                )
            )
        return teams

    # ------------------------------------------------------------------
    # Matching configuration
    # ------------------------------------------------------------------

    def get_latest_matching_config(self) -> Optional[MatchingConfig]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM matching_config ORDER BY version DESC LIMIT 1;"
            ).fetchone()
        if row is None:
            return None
        return _row_to_config(row)

    def insert_matching_config(self, config: MatchingConfig, now: datetime) -> MatchingConfig:
        """Store `config` as the next version; the version field of the input is ignored."""
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(version), 0) AS version FROM matching_config;"
            ).fetchone()
            next_version = int(row["version"]) + 1
            conn.execute(
                """
                INSERT INTO matching_config (
                    version, distance_max_km, weights_json, team_bonus_json, policy_json, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?);
                """,
                (
                    next_version,
                    config.distance_max_km,
                    json.dumps(dict(config.weights), sort_keys=True),
                    json.dumps({"two": config.team_bonus_two, "three_plus": config.team_bonus_three_plus}),
                    json.dumps(
                        {
                            "fanout_size": config.fanout_size,
                            "invitation_ttl_minutes": config.invitation_ttl_minutes,
                            "max_retry_attempts": config.max_retry_attempts,
                            "fallback_threshold": config.fallback_threshold,
                            "distance_relaxation_factor": config.distance_relaxation_factor,
                            "short_notice_hours": config.short_notice_hours,
                            "escalation_deadline_hours": config.escalation_deadline_hours,
                            "rating_credibility_reviews": config.rating_credibility_reviews,
                        },
                        sort_keys=True,
                    ),
                    to_db_timestamp(now),
                ),
            )
            stored = conn.execute(
                "SELECT * FROM matching_config WHERE version = ?;", (next_version,)
            ).fetchone()
        return _row_to_config(stored)

    # ------------------------------------------------------------------
    # Bookings
    # ------------------------------------------------------------------

    def create_booking(self, booking: BookingRequest, now: datetime) -> BookingRequest:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO bookings (
                    id, client_id, service_category, eco_preference, required_providers,
                    city, postal_code, latitude, longitude, start_at, end_at, status,
                    price_ceiling_cents, matching_retry_count, short_notice,
                    created_at, updated_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 0, ?, ?, ?);
                """,
                (
                    booking.booking_id,
                    booking.client_id,
                    booking.service_category,
                    booking.eco_preference,
                    booking.required_providers,
                    booking.city,
                    booking.postal_code,
                    booking.latitude,
                    booking.longitude,
                    to_db_timestamp(booking.start_at),
                    to_db_timestamp(booking.end_at),
                    booking.status,
                    booking.price_ceiling_cents,
                    int(booking.short_notice),
                    to_db_timestamp(booking.created_at or now),
                    to_db_timestamp(now),
                ),
            )
            self._insert_event(
                conn,
                booking_id=booking.booking_id,
                action="created",
                from_status=None,
                to_status=booking.status,
                reason=None,
                actor_kind="client",
                actor_id=booking.client_id,
                client_id=booking.client_id,
                now=booking.created_at or now,
            )
            row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking.booking_id,)).fetchone()
        return _row_to_booking(row)

    def get_booking(self, booking_id: str) -> Optional[BookingRequest]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
        if row is None:
            return None
        return _row_to_booking(row)

    def _insert_event(
        self,
        conn: sqlite3.Connection,
        *,
        booking_id: str,
        action: str,
        from_status: Optional[str],
        to_status: Optional[str],
        reason: Optional[str],
        actor_kind: str,
        actor_id: Optional[str],
        client_id: Optional[str],
        now: datetime,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_events (
                booking_id, action, from_status, to_status, reason,
                actor_kind, actor_id, client_id, created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?);
            """,
            (
                booking_id,
                action,
                from_status,
                to_status,
                reason,
                actor_kind,
                actor_id,
                client_id,
                to_db_timestamp(now),
            ),
        )

    def _set_booking_status(
        self,
        conn: sqlite3.Connection,
        booking_row: sqlite3.Row,
        to_status: str,
        *,
        reason: Optional[str],
        actor_kind: str,
        actor_id: Optional[str],
        now: datetime,
    ) -> None:
        from_status = str(booking_row["status"])
        if from_status == to_status:
            return
        conn.execute(
            "UPDATE bookings SET status = ?, updated_at = ? WHERE id = ?;",
            (to_status, to_db_timestamp(now), booking_row["id"]),
        )
        self._insert_event(
            conn,
            booking_id=str(booking_row["id"]),
            action="status_changed",
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            actor_kind=actor_kind,
            actor_id=actor_id,
            client_id=booking_row["client_id"],
            now=now,
        )

    def update_booking_status(
        self,
        booking_id: str,
        to_status: str,
        *,
        expected_statuses: Sequence[str],
        reason: Optional[str],
        actor_kind: str,
        actor_id: Optional[str],
        now: datetime,
        release_confirmed_locks: bool = False,
    ) -> tuple[Optional[BookingRequest], bool]:
        """Transition a booking when its current status is expected.

        Returns the booking (None when missing) and whether the transition was applied.
        """
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
            if row is None:
                return None, False
            if str(row["status"]) not in expected_statuses:
                return _row_to_booking(row), False
            self._set_booking_status(
                conn,
                row,
                to_status,
                reason=reason,
                actor_kind=actor_kind,
                actor_id=actor_id,
                now=now,
            )
            if release_confirmed_locks:
                conn.execute(
                    f"""
                    UPDATE slot_locks
                    SET status = 'RELEASED', released_at = ?
                    WHERE booking_id = ? AND status IN {_ACTIVE_LOCKS};
                    """,
                    (to_db_timestamp(now), booking_id),
                )
            updated = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
        return _row_to_booking(updated), True

    def record_matching_round(self, booking_id: str, now: datetime) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE bookings SET last_matching_round_at = ?, updated_at = ? WHERE id = ?;",
                (to_db_timestamp(now), to_db_timestamp(now), booking_id),
            )

    def increment_retry_count(self, booking_id: str, now: datetime) -> int:
        with self._transaction() as conn:
            conn.execute(
                """
                UPDATE bookings
                SET matching_retry_count = matching_retry_count + 1, updated_at = ?
                WHERE id = ?;
                """,
                (to_db_timestamp(now), booking_id),
            )
            row = conn.execute(
                "SELECT matching_retry_count FROM bookings WHERE id = ?;", (booking_id,)
            ).fetchone()
        return int(row["matching_retry_count"])

    def mark_fallback_requested(
        self,
        booking_id: str,
        now: datetime,
        fallback_candidate: Optional[dict[str, Any]] = None,
    ) -> tuple[bool, Optional[FallbackTeamCandidate]]:
        """Set `fallback_requested_at` once and attach a team candidate when none is attached."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
            if row is None:
                return False, None
            requested_now = row["fallback_requested_at"] is None
            if requested_now:
                conn.execute(
                    "UPDATE bookings SET fallback_requested_at = ?, updated_at = ? WHERE id = ?;",
                    (to_db_timestamp(now), to_db_timestamp(now), booking_id),
                )
                self._insert_event(
                    conn,
                    booking_id=booking_id,
                    action="fallback_requested",
                    from_status=row["status"],
                    to_status=row["status"],
                    reason=None,
                    actor_kind="system",
                    actor_id=None,
                    client_id=row["client_id"],
                    now=now,
                )
            attached: Optional[FallbackTeamCandidate] = None
            if fallback_candidate is not None and row["fallback_team_candidate_id"] is None:
                cursor = conn.execute(
                    """
                    INSERT INTO fallback_team_candidates (
                        booking_id, team_id, name, preferred_size, member_ids_json, total_score, created_at
                    )
                    VALUES (?, ?, ?, ?, ?, ?, ?);
                    """,
                    (
                        booking_id,
                        fallback_candidate["team_id"],
                        fallback_candidate["name"],
                        fallback_candidate["preferred_size"],
                        json.dumps(list(fallback_candidate["member_ids"])),
                        fallback_candidate["total_score"],
                        to_db_timestamp(now),
                    ),
                )
                candidate_id = int(cursor.lastrowid)
                conn.execute(
                    "UPDATE bookings SET fallback_team_candidate_id = ? WHERE id = ?;",
                    (candidate_id, booking_id),
                )
                attached = _row_to_fallback(
                    conn.execute(
                        "SELECT * FROM fallback_team_candidates WHERE id = ?;", (candidate_id,)
                    ).fetchone()
                )
        return requested_now, attached

    def mark_fallback_escalated(self, booking_id: str, now: datetime) -> bool:
        with self._transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE bookings
                SET fallback_escalated_at = ?, updated_at = ?
                WHERE id = ? AND fallback_escalated_at IS NULL;
                """,
                (to_db_timestamp(now), to_db_timestamp(now), booking_id),
            )
            escalated = cursor.rowcount > 0
            if escalated:
                row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
                self._insert_event(
                    conn,
                    booking_id=booking_id,
                    action="fallback_escalated",
                    from_status=row["status"],
                    to_status=row["status"],
                    reason=None,
                    actor_kind="system",
                    actor_id=None,
                    client_id=row["client_id"],
                    now=now,
                )
        return escalated

    def get_fallback_team_candidate(self, candidate_id: int) -> Optional[FallbackTeamCandidate]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT * FROM fallback_team_candidates WHERE id = ?;", (candidate_id,)
            ).fetchone()
        if row is None:
            return None
        return _row_to_fallback(row)

    def list_fallback_queue(self, limit: int = 100) -> list[tuple[BookingRequest, int]]:
        """Understaffed bookings awaiting operators, escalated first."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT b.*, (
                    SELECT COUNT(*) FROM assignments AS a WHERE a.booking_id = b.id
                ) AS assigned_count
                FROM bookings AS b
                WHERE b.fallback_requested_at IS NOT NULL
                  AND b.status = 'pending_provider'
                  AND (
                      SELECT COUNT(*) FROM assignments AS a WHERE a.booking_id = b.id
                  ) < b.required_providers
                ORDER BY
                    b.fallback_escalated_at IS NULL ASC,
                    b.fallback_escalated_at ASC,
                    b.fallback_requested_at ASC,
                    b.id ASC
                LIMIT ?;
                """,
                (limit,),
            ).fetchall()
        return [(_row_to_booking(row), int(row["assigned_count"])) for row in rows]

    def list_stalled_bookings(
        self,
        now: datetime,
        idle_since: datetime,
        max_retry_count: int,
        limit: int,
    ) -> list[BookingRequest]:
        """Pending bookings with no outstanding invitation whose last round is stale.

        Bookings past `max_retry_count` get no further rounds and are left to
        operators.
        """
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""
                SELECT b.*
                FROM bookings AS b
                WHERE b.status = 'pending_provider'
                  AND b.start_at > ?
                  AND b.last_matching_round_at IS NOT NULL
                  AND b.last_matching_round_at <= ?
                  AND b.matching_retry_count <= ?
                  AND NOT EXISTS (
                      SELECT 1 FROM invitations AS i
                      WHERE i.booking_id = b.id AND i.status IN {_OUTSTANDING_INVITATIONS}
                  )
                  AND (
                      SELECT COUNT(*) FROM assignments AS a WHERE a.booking_id = b.id
                  ) < b.required_providers
                ORDER BY b.last_matching_round_at ASC, b.id ASC
                LIMIT ?;
                """,
                (to_db_timestamp(now), to_db_timestamp(idle_since), max_retry_count, limit),
            ).fetchall()
        return [_row_to_booking(row) for row in rows]

    def list_escalation_due(self, deadline: datetime, limit: int) -> list[BookingRequest]:
        """Fallback-requested bookings starting before `deadline` that are not yet escalated."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT b.*
                FROM bookings AS b
                WHERE b.status = 'pending_provider'
                  AND b.fallback_requested_at IS NOT NULL
                  AND b.fallback_escalated_at IS NULL
                  AND b.start_at <= ?
                  AND (
                      SELECT COUNT(*) FROM assignments AS a WHERE a.booking_id = b.id
                  ) < b.required_providers
                ORDER BY b.start_at ASC, b.id ASC
                LIMIT ?;
                """,
                (to_db_timestamp(deadline), limit),
            ).fetchall()
        return [_row_to_booking(row) for row in rows]

    # ------------------------------------------------------------------
    # Slot locks
    # ------------------------------------------------------------------

    def acquire_slot_lock(
        self,
        *,
        provider_id: str,
        booking_id: str,
        window: TimeWindow,
        now: datetime,
        expires_at: datetime,
        team_id: Optional[str] = None,
    ) -> LockOutcome:
        """Atomically check for overlapping active locks and create a HELD lock."""
        with self._transaction() as conn:
            conflict = conn.execute(
                f"""
                SELECT id FROM slot_locks
                WHERE provider_id = ?
                  AND status IN {_ACTIVE_LOCKS}
                  AND slot_start_at < ?
                  AND slot_end_at > ?
                ORDER BY id ASC
                LIMIT 1;
                """,
                (provider_id, to_db_timestamp(window.end_at), to_db_timestamp(window.start_at)),
            ).fetchone()
            if conflict is not None:
                return LockOutcome(
                    status="conflict",
                    reason="provider_slot_locked",
                    conflicting_lock_id=int(conflict["id"]),
                )
            cursor = conn.execute(
                """
                INSERT INTO slot_locks (
                    booking_id, provider_id, team_id, status, slot_start_at, slot_end_at,
                    created_at, expires_at
                )
                VALUES (?, ?, ?, 'HELD', ?, ?, ?, ?);
                """,
                (
                    booking_id,
                    provider_id,
                    team_id,
                    to_db_timestamp(window.start_at),
                    to_db_timestamp(window.end_at),
                    to_db_timestamp(now),
                    to_db_timestamp(expires_at),
                ),
            )
            row = conn.execute("SELECT * FROM slot_locks WHERE id = ?;", (cursor.lastrowid,)).fetchone()
        return LockOutcome(status="acquired", lock=_row_to_lock(row))

    def get_slot_lock(self, lock_id: int) -> Optional[SlotLock]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM slot_locks WHERE id = ?;", (lock_id,)).fetchone()
        if row is None:
            return None
        return _row_to_lock(row)

    def confirm_slot_lock(self, lock_id: int, now: datetime) -> Optional[LockOutcome]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM slot_locks WHERE id = ?;", (lock_id,)).fetchone()
            if row is None:
                return None
            outcome = self._confirm_lock_row(conn, row, now)
        return outcome

    def _confirm_lock_row(
        self,
        conn: sqlite3.Connection,
        row: sqlite3.Row,
        now: datetime,
    ) -> LockOutcome:
        lock = _row_to_lock(row)
        if lock.status == LockStatus.CONFIRMED:
            return LockOutcome(status="acquired", lock=lock)
        if lock.status == LockStatus.RELEASED:
            return LockOutcome(status="conflict", lock=lock, reason="lock_released")
        if lock.expires_at <= now:
            return LockOutcome(status="conflict", lock=lock, reason="lock_expired")
        conn.execute("UPDATE slot_locks SET status = 'CONFIRMED' WHERE id = ?;", (lock.lock_id,))
        updated = conn.execute("SELECT * FROM slot_locks WHERE id = ?;", (lock.lock_id,)).fetchone()
        return LockOutcome(status="acquired", lock=_row_to_lock(updated))

    def release_slot_lock(self, lock_id: int, now: datetime) -> Optional[SlotLock]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM slot_locks WHERE id = ?;", (lock_id,)).fetchone()
            if row is None:
                return None
            self._release_locks(conn, [lock_id], now)
            updated = conn.execute("SELECT * FROM slot_locks WHERE id = ?;", (lock_id,)).fetchone()
        return _row_to_lock(updated)

    def _release_locks(
        self,
        conn: sqlite3.Connection,
        lock_ids: Sequence[Optional[int]],
        now: datetime,
    ) -> None:
        ids = [lock_id for lock_id in lock_ids if lock_id is not None]
        if not ids:
            return
        placeholders = ",".join("?" for _ in ids)
        conn.execute(
            f"""
            UPDATE slot_locks
            SET status = 'RELEASED', released_at = ?
            WHERE id IN ({placeholders}) AND status IN {_ACTIVE_LOCKS};
            """,
            (to_db_timestamp(now), *ids),
        )

    def list_booking_locks(self, booking_id: str) -> list[SlotLock]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM slot_locks WHERE booking_id = ? ORDER BY id ASC;", (booking_id,)
            ).fetchall()
        return [_row_to_lock(row) for row in rows]

    def list_locked_provider_ids(self, window: TimeWindow) -> set[str]:
        """Providers holding any active lock that overlaps `window`."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT provider_id FROM slot_locks
                WHERE provider_id IS NOT NULL
                  AND status IN {_ACTIVE_LOCKS}
                  AND slot_start_at < ?
                  AND slot_end_at > ?;
                """,
                (to_db_timestamp(window.end_at), to_db_timestamp(window.start_at)),
            ).fetchall()
        return {str(row["provider_id"]) for row in rows}

    def sweep_expired_locks(self, now: datetime, limit: int) -> list[SlotLock]:
        """Release HELD locks past their expiry; CONFIRMED locks are never swept."""
        with self._transaction() as conn:
            rows = conn.execute(
                """
                SELECT * FROM slot_locks
                WHERE status = 'HELD' AND expires_at <= ?
                ORDER BY expires_at ASC, id ASC
                LIMIT ?;
                """,
                (to_db_timestamp(now), limit),
            ).fetchall()
            self._release_locks(conn, [int(row["id"]) for row in rows], now)
            released = [
                _row_to_lock(row)
                for row in conn.execute(
                    f"SELECT * FROM slot_locks WHERE id IN ({','.join('?' for _ in rows) or 'NULL'}) ORDER BY id ASC;",
                    tuple(int(row["id"]) for row in rows),
                ).fetchall()
            ]
        return released

    # ------------------------------------------------------------------
    # Invitations
    # ------------------------------------------------------------------

    def create_invitation(
        self,
        *,
        booking_id: str,
        provider_id: str,
        lock_id: int,
        now: datetime,
        expires_at: datetime,
        metadata: Optional[dict[str, Any]] = None,
    ) -> Optional[Invitation]:
        """Create a pending invitation; None when one is already outstanding for the pair."""
        try:
            with self._transaction() as conn:
                cursor = conn.execute(
                    """
                    INSERT INTO invitations (
                        booking_id, provider_id, lock_id, status, created_at, expires_at, metadata_json
                    )
                    VALUES (?, ?, ?, 'pending', ?, ?, ?);
                    """,
                    (
                        booking_id,
                        provider_id,
                        lock_id,
                        to_db_timestamp(now),
                        to_db_timestamp(expires_at),
                        json.dumps(metadata or {}, sort_keys=True),
                    ),
                )
                row = conn.execute(
                    "SELECT * FROM invitations WHERE id = ?;", (cursor.lastrowid,)
                ).fetchone()
        except sqlite3.IntegrityError:
            logger.info(
                "Outstanding invitation already exists | booking_id=%s | provider_id=%s",
                booking_id,
                provider_id,
            )
            return None
        return _row_to_invitation(row)

    def get_invitation(self, invitation_id: int) -> Optional[Invitation]:
        with closing(self._connect()) as conn:
            row = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
        if row is None:
            return None
        return _row_to_invitation(row)

    def list_booking_invitations(self, booking_id: str) -> list[Invitation]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM invitations WHERE booking_id = ? ORDER BY id ASC;", (booking_id,)
            ).fetchall()
        return [_row_to_invitation(row) for row in rows]

    def find_outstanding_invitation(self, booking_id: str, provider_id: str) -> Optional[Invitation]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"""
                SELECT * FROM invitations
                WHERE booking_id = ? AND provider_id = ? AND status IN {_OUTSTANDING_INVITATIONS};
                """,
                (booking_id, provider_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_invitation(row)

    def find_outstanding_invitation_for_lock(self, lock_id: int) -> Optional[Invitation]:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"""
                SELECT * FROM invitations
                WHERE lock_id = ? AND status IN {_OUTSTANDING_INVITATIONS};
                """,
                (lock_id,),
            ).fetchone()
        if row is None:
            return None
        return _row_to_invitation(row)

    def list_expired_outstanding_invitations(self, now: datetime, limit: int) -> list[Invitation]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM invitations
                WHERE status IN {_OUTSTANDING_INVITATIONS} AND expires_at <= ?
                ORDER BY expires_at ASC, id ASC
                LIMIT ?;
                """,
                (to_db_timestamp(now), limit),
            ).fetchall()
        return [_row_to_invitation(row) for row in rows]

    def mark_invitation_viewed(self, invitation_id: int, now: datetime) -> Optional[InvitationOutcome]:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
            if row is None:
                return None
            invitation = _row_to_invitation(row)
            if invitation.status == InvitationStatus.VIEWED:
                return InvitationOutcome(status="ok", invitation=invitation)
            if invitation.status != InvitationStatus.PENDING:
                return InvitationOutcome(
                    status="conflict",
                    invitation=invitation,
                    reason=f"invitation_{invitation.status}",
                )
            conn.execute(
                "UPDATE invitations SET status = 'viewed', viewed_at = ? WHERE id = ?;",
                (to_db_timestamp(now), invitation_id),
            )
            updated = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
        return InvitationOutcome(status="ok", invitation=_row_to_invitation(updated))

    def _booking_is_exhausted(self, conn: sqlite3.Connection, booking_id: str) -> bool:
        row = conn.execute(
            f"""
            SELECT
                b.required_providers AS required_providers,
                b.status AS status,
                (SELECT COUNT(*) FROM assignments AS a WHERE a.booking_id = b.id) AS assigned,
                (
                    SELECT COUNT(*) FROM invitations AS i
                    WHERE i.booking_id = b.id AND i.status IN {_OUTSTANDING_INVITATIONS}
                ) AS outstanding
            FROM bookings AS b
            WHERE b.id = ?;
            """,
            (booking_id,),
        ).fetchone()
        if row is None:
            return False
        return (
            str(row["status"]) == BookingStatus.PENDING_PROVIDER
            and int(row["outstanding"]) == 0
            and int(row["assigned"]) < int(row["required_providers"])
        )

    def _supersede_outstanding(
        self,
        conn: sqlite3.Connection,
        booking_id: str,
        now: datetime,
        *,
        status: str,
        reason: str,
        keep_invitation_id: Optional[int] = None,
    ) -> list[int]:
        rows = conn.execute(
            f"""
            SELECT id, lock_id, metadata_json FROM invitations
            WHERE booking_id = ? AND status IN {_OUTSTANDING_INVITATIONS} AND id != ?;
            """,
            (booking_id, keep_invitation_id or -1),
        ).fetchall()
        for row in rows:
            metadata = json.loads(row["metadata_json"] or "{}")
            metadata["reason"] = reason
            conn.execute(
                "UPDATE invitations SET status = ?, responded_at = ?, metadata_json = ? WHERE id = ?;",
                (status, to_db_timestamp(now), json.dumps(metadata, sort_keys=True), row["id"]),
            )
        self._release_locks(conn, [row["lock_id"] for row in rows], now)
        return [int(row["id"]) for row in rows]

    def accept_invitation(self, invitation_id: int, now: datetime) -> Optional[InvitationOutcome]:
        """Confirm the lock, record the assignment and supersede siblings in one transaction."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
            if row is None:
                return None
            invitation = _row_to_invitation(row)
            if invitation.status in InvitationStatus.TERMINAL:
                return InvitationOutcome(
                    status="conflict",
                    invitation=invitation,
                    reason=f"invitation_{invitation.status}",
                )
            booking_row = conn.execute(
                "SELECT * FROM bookings WHERE id = ?;", (invitation.booking_id,)
            ).fetchone()
            assigned = int(
                conn.execute(
                    "SELECT COUNT(*) AS count FROM assignments WHERE booking_id = ?;",
                    (invitation.booking_id,),
                ).fetchone()["count"]
            )
            required = int(booking_row["required_providers"])
            if str(booking_row["status"]) != BookingStatus.PENDING_PROVIDER or assigned >= required:
                return InvitationOutcome(
                    status="conflict",
                    invitation=invitation,
                    reason="booking_not_open",
                )

            lock_row = None
            if invitation.lock_id is not None:
                lock_row = conn.execute(
                    "SELECT * FROM slot_locks WHERE id = ?;", (invitation.lock_id,)
                ).fetchone()
            if lock_row is None:
                return InvitationOutcome(status="conflict", invitation=invitation, reason="lock_missing")
            lock_outcome = self._confirm_lock_row(conn, lock_row, now)
            if not lock_outcome.ok:
                return InvitationOutcome(
                    status="conflict",
                    invitation=invitation,
                    reason=lock_outcome.reason,
                )

            cursor = conn.execute(
                """
                INSERT INTO assignments (booking_id, provider_id, team_id, source, created_at)
                VALUES (?, ?, NULL, 'invitation', ?);
                """,
                (invitation.booking_id, invitation.provider_id, to_db_timestamp(now)),
            )
            assignment_row = conn.execute(
                "SELECT * FROM assignments WHERE id = ?;", (cursor.lastrowid,)
            ).fetchone()
            conn.execute(
                "UPDATE invitations SET status = 'accepted', responded_at = ? WHERE id = ?;",
                (to_db_timestamp(now), invitation_id),
            )

            superseded: list[int] = []
            if assigned + 1 >= required:
                superseded = self._supersede_outstanding(
                    conn,
                    invitation.booking_id,
                    now,
                    status=InvitationStatus.DECLINED,
                    reason="superseded",
                    keep_invitation_id=invitation_id,
                )
                self._set_booking_status(
                    conn,
                    booking_row,
                    BookingStatus.PENDING_CLIENT,
                    reason="providers_assigned",
                    actor_kind="system",
                    actor_id=None,
                    now=now,
                )
            updated = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
        return InvitationOutcome(
            status="ok",
            invitation=_row_to_invitation(updated),
            assignment=_row_to_assignment(assignment_row),
            superseded_invitation_ids=tuple(superseded),
        )

    def close_invitation(
        self,
        invitation_id: int,
        now: datetime,
        *,
        status: str,
        reason: Optional[str] = None,
    ) -> Optional[InvitationOutcome]:
        """Move an outstanding invitation to declined/expired and release its lock."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
            if row is None:
                return None
            invitation = _row_to_invitation(row)
            if invitation.status in InvitationStatus.TERMINAL:
                return InvitationOutcome(
                    status="conflict",
                    invitation=invitation,
                    reason=f"invitation_{invitation.status}",
                )
            metadata = dict(invitation.metadata)
            if reason is not None:
                metadata["reason"] = reason
            conn.execute(
                "UPDATE invitations SET status = ?, responded_at = ?, metadata_json = ? WHERE id = ?;",
                (
                    status,
                    to_db_timestamp(now) if status == InvitationStatus.DECLINED else None,
                    json.dumps(metadata, sort_keys=True),
                    invitation_id,
                ),
            )
            self._release_locks(conn, [invitation.lock_id], now)
            exhausted = self._booking_is_exhausted(conn, invitation.booking_id)
            updated = conn.execute("SELECT * FROM invitations WHERE id = ?;", (invitation_id,)).fetchone()
        return InvitationOutcome(
            status="ok",
            invitation=_row_to_invitation(updated),
            exhausted=exhausted,
        )

    def list_staffed_bookings_with_outstanding(self, limit: int) -> list[str]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""
                SELECT DISTINCT b.id
                FROM bookings AS b
                INNER JOIN invitations AS i ON i.booking_id = b.id
                WHERE i.status IN {_OUTSTANDING_INVITATIONS}
                  AND (
                      b.status != 'pending_provider'
                      OR (SELECT COUNT(*) FROM assignments AS a WHERE a.booking_id = b.id)
                         >= b.required_providers
                  )
                ORDER BY b.id ASC
                LIMIT ?;
                """,
                (limit,),
            ).fetchall()
        return [str(row["id"]) for row in rows]

    def supersede_outstanding_invitations(self, booking_id: str, now: datetime) -> list[int]:
        """Idempotent sibling cleanup for bookings that no longer need invitations."""
        with self._transaction() as conn:
            booking_row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
            if booking_row is None:
                return []
            assigned = int(
                conn.execute(
                    "SELECT COUNT(*) AS count FROM assignments WHERE booking_id = ?;", (booking_id,)
                ).fetchone()["count"]
            )
            still_open = (
                str(booking_row["status"]) == BookingStatus.PENDING_PROVIDER
                and assigned < int(booking_row["required_providers"])
            )
            if still_open:
                return []
            return self._supersede_outstanding(
                conn,
                booking_id,
                now,
                status=InvitationStatus.DECLINED,
                reason="superseded",
            )

    # ------------------------------------------------------------------
    # Assignments and booking-level operations
    # ------------------------------------------------------------------

    def list_booking_assignments(self, booking_id: str) -> list[Assignment]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                "SELECT * FROM assignments WHERE booking_id = ? ORDER BY id ASC;", (booking_id,)
            ).fetchall()
        return [_row_to_assignment(row) for row in rows]

    def count_assignments(self, booking_id: str) -> int:
        with closing(self._connect()) as conn:
            row = conn.execute(
                "SELECT COUNT(*) AS count FROM assignments WHERE booking_id = ?;", (booking_id,)
            ).fetchone()
        return int(row["count"])

    def count_outstanding_invitations(self, booking_id: str) -> int:
        with closing(self._connect()) as conn:
            row = conn.execute(
                f"""
                SELECT COUNT(*) AS count FROM invitations
                WHERE booking_id = ? AND status IN {_OUTSTANDING_INVITATIONS};
                """,
                (booking_id,),
            ).fetchone()
        return int(row["count"])

    def cancel_booking(
        self,
        booking_id: str,
        now: datetime,
        *,
        actor_kind: str,
        actor_id: Optional[str],
    ) -> tuple[Optional[BookingRequest], bool]:
        """Cancel a booking and release every invitation and lock tied to it."""
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
            if row is None:
                return None, False
            if str(row["status"]) in BookingStatus.CLOSED:
                return _row_to_booking(row), False
            self._supersede_outstanding(
                conn,
                booking_id,
                now,
                status=InvitationStatus.EXPIRED,
                reason="booking_cancelled",
            )
            conn.execute(
                f"""
                UPDATE slot_locks
                SET status = 'RELEASED', released_at = ?
                WHERE booking_id = ? AND status IN {_ACTIVE_LOCKS};
                """,
                (to_db_timestamp(now), booking_id),
            )
            self._set_booking_status(
                conn,
                row,
                BookingStatus.CANCELLED,
                reason=f"{actor_kind}_cancelled",
                actor_kind=actor_kind,
                actor_id=actor_id,
                now=now,
            )
            updated = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
        return _row_to_booking(updated), True

    def force_assign(
        self,
        booking_id: str,
        provider_ids: Sequence[str],
        now: datetime,
        *,
        source: str,
        team_id: Optional[str] = None,
        actor_id: Optional[str] = None,
    ) -> Optional[ForceAssignOutcome]:
        """Assign providers directly, bypassing invitations but not slot exclusivity."""
        with self._transaction() as conn:
            booking_row = conn.execute("SELECT * FROM bookings WHERE id = ?;", (booking_id,)).fetchone()
            if booking_row is None:
                return None
            if str(booking_row["status"]) != BookingStatus.PENDING_PROVIDER:
                return ForceAssignOutcome(
                    status="conflict",
                    booking_id=booking_id,
                    reason="booking_not_open",
                )
            start_at = str(booking_row["start_at"])
            end_at = str(booking_row["end_at"])
            already_assigned = {
                str(row["provider_id"])
                for row in conn.execute(
                    "SELECT provider_id FROM assignments WHERE booking_id = ?;", (booking_id,)
                ).fetchall()
            }
            targets = [provider_id for provider_id in dict.fromkeys(provider_ids) if provider_id not in already_assigned]

            self._supersede_outstanding(
                conn,
                booking_id,
                now,
                status=InvitationStatus.DECLINED,
                reason="operator_assigned",
            )

            conflicts: list[str] = []
            for provider_id in targets:
                conflict = conn.execute(
                    f"""
                    SELECT id FROM slot_locks
                    WHERE provider_id = ? AND status IN {_ACTIVE_LOCKS}
                      AND slot_start_at < ? AND slot_end_at > ?
                    LIMIT 1;
                    """,
                    (provider_id, end_at, start_at),
                ).fetchone()
                if conflict is not None:
                    conflicts.append(provider_id)
            if conflicts:
                conn.rollback()
                return ForceAssignOutcome(
                    status="conflict",
                    booking_id=booking_id,
                    reason="provider_slot_locked",
                    conflicting_provider_ids=tuple(conflicts),
                )

            created_ids: list[int] = []
            for provider_id in targets:
                conn.execute(
                    """
                    INSERT INTO slot_locks (
                        booking_id, provider_id, team_id, status, slot_start_at, slot_end_at,
                        created_at, expires_at
                    )
                    VALUES (?, ?, ?, 'CONFIRMED', ?, ?, ?, ?);
                    """,
                    (booking_id, provider_id, team_id, start_at, end_at, to_db_timestamp(now), end_at),
                )
                cursor = conn.execute(
                    """
                    INSERT INTO assignments (booking_id, provider_id, team_id, source, created_at)
                    VALUES (?, ?, ?, ?, ?);
                    """,
                    (booking_id, provider_id, team_id, source, to_db_timestamp(now)),
                )
                created_ids.append(int(cursor.lastrowid))

            total_assigned = len(already_assigned) + len(targets)
            if total_assigned >= int(booking_row["required_providers"]):
                self._set_booking_status(
                    conn,
                    booking_row,
                    BookingStatus.PENDING_CLIENT,
                    reason=source,
                    actor_kind="operator",
                    actor_id=actor_id,
                    now=now,
                )
            placeholders = ",".join("?" for _ in created_ids) or "NULL"
            assignment_rows = conn.execute(
                f"SELECT * FROM assignments WHERE id IN ({placeholders}) ORDER BY id ASC;",
                tuple(created_ids),
            ).fetchall()
        return ForceAssignOutcome(
            status="ok",
            booking_id=booking_id,
            assignments=[_row_to_assignment(row) for row in assignment_rows],
        )

    # ------------------------------------------------------------------
    # Reporting feeds
    # ------------------------------------------------------------------

    def list_invitation_rows_between(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT id, booking_id, provider_id, status, created_at, responded_at
                FROM invitations
                WHERE created_at >= ? AND created_at <= ?
                ORDER BY id ASC;
                """,
                (to_db_timestamp(start), to_db_timestamp(end)),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_cancellation_rows_between(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """Post-confirmation cancellations with the provider they are charged to.

        A provider who cancels is charged; otherwise the first assigned provider is.
        """
        with closing(self._connect()) as conn:
            rows = conn.execute(
                """
                SELECT
                    e.booking_id,
                    e.reason,
                    e.actor_kind,
                    e.actor_id,
                    e.client_id,
                    e.from_status,
                    e.created_at,
                    COALESCE(
                        CASE WHEN e.actor_kind = 'provider' THEN e.actor_id END,
                        (
                            SELECT a.provider_id FROM assignments AS a
                            WHERE a.booking_id = e.booking_id
                            ORDER BY a.created_at ASC, a.id ASC
                            LIMIT 1
                        )
                    ) AS provider_id
                FROM booking_events AS e
                WHERE e.action = 'status_changed'
                  AND e.to_status = 'cancelled'
                  AND e.from_status IN ('confirmed', 'in_progress')
                  AND e.created_at >= ? AND e.created_at <= ?
                ORDER BY e.id ASC;
                """,
                (to_db_timestamp(start), to_db_timestamp(end)),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_booking_rows_between(self, start: datetime, end: datetime) -> list[dict[str, Any]]:
        """One row per booking created in the period, with its first assigned provider."""
        with closing(self._connect()) as conn:
            rows = conn.execute(
                f"""
                SELECT
                    b.id AS booking_id,
                    b.client_id,
                    b.status,
                    b.created_at,
                    b.start_at,
                    b.service_category,
                    b.eco_preference,
                    b.city,
                    b.postal_code,
                    b.short_notice,
                    b.required_providers,
                    b.fallback_requested_at,
                    b.fallback_escalated_at,
                    (SELECT COUNT(*) FROM assignments AS a WHERE a.booking_id = b.id) AS assigned_count,
                    (SELECT MIN(a.created_at) FROM assignments AS a WHERE a.booking_id = b.id)
                        AS first_assignment_at,
                    (SELECT MIN(i.created_at) FROM invitations AS i WHERE i.booking_id = b.id)
                        AS first_invitation_at,
                    (SELECT MIN(i.responded_at) FROM invitations AS i WHERE i.booking_id = b.id)
                        AS first_response_at,
                    (SELECT COUNT(*) FROM invitations AS i WHERE i.booking_id = b.id)
                        AS invitation_count,
                    fa.provider_id AS first_provider_id,
                    p.kind AS first_provider_kind,
                    p.offers_eco AS first_provider_offers_eco
                FROM bookings AS b
                {_FIRST_ASSIGNMENT_JOIN}
                WHERE b.created_at >= ? AND b.created_at <= ?
                ORDER BY b.id ASC;
                """,
                (to_db_timestamp(start), to_db_timestamp(end)),
            ).fetchall()
        return [dict(row) for row in rows]

    def list_booking_history(
        self,
        start: datetime,
        end: datetime,
        *,
        service_category: Optional[str] = None,
        postal_code_prefix: Optional[str] = None,
        result: Optional[str] = None,
        invitation_status: Optional[str] = None,
        limit: int,
        offset: int,
    ) -> tuple[int, list[dict[str, Any]]]:
        """Newest-first page of non-draft bookings plus the total matching the filters."""
        clauses = ["b.created_at >= ?", "b.created_at <= ?", "b.status != 'draft'"]
        params: list[Any] = [to_db_timestamp(start), to_db_timestamp(end)]
        if service_category:
            clauses.append("b.service_category = ?")
            params.append(service_category)
        if postal_code_prefix:
            clauses.append("b.postal_code LIKE ? ESCAPE '\\'")
            escaped = postal_code_prefix.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            params.append(f"{escaped}%")
        if result == HISTORY_ASSIGNED:
            clauses.append("EXISTS (SELECT 1 FROM assignments AS a WHERE a.booking_id = b.id)")
        elif result == HISTORY_UNASSIGNED:
            clauses.append("NOT EXISTS (SELECT 1 FROM assignments AS a WHERE a.booking_id = b.id)")
        if invitation_status:
            clauses.append(
                "EXISTS (SELECT 1 FROM invitations AS i WHERE i.booking_id = b.id AND i.status = ?)"
            )
            params.append(invitation_status)
        where = " AND ".join(clauses)

        with closing(self._connect()) as conn:
            total = int(
                conn.execute(
                    f"SELECT COUNT(*) AS count FROM bookings AS b WHERE {where};",
                    params,
                ).fetchone()["count"]
            )
            rows = conn.execute(
                f"""
                SELECT
                    b.id AS booking_id,
                    b.created_at,
                    b.start_at,
                    b.service_category,
                    b.city,
                    b.postal_code,
                    b.status,
                    b.required_providers,
                    b.short_notice,
                    fa.provider_id AS first_provider_id,
                    (SELECT COUNT(*) FROM invitations AS i WHERE i.booking_id = b.id)
                        AS invitation_count,
                    (SELECT COUNT(*) FROM invitations AS i WHERE i.booking_id = b.id AND i.status = 'accepted')
                        AS accepted_count,
                    (SELECT COUNT(*) FROM invitations AS i WHERE i.booking_id = b.id AND i.status = 'declined')
                        AS declined_count,
                    (SELECT COUNT(*) FROM invitations AS i WHERE i.booking_id = b.id AND i.status = 'expired')
                        AS expired_count,
                    (SELECT MAX(i.created_at) FROM invitations AS i WHERE i.booking_id = b.id)
                        AS last_invitation_at
                FROM bookings AS b
                {_FIRST_ASSIGNMENT_JOIN}
                WHERE {where}
                ORDER BY b.created_at DESC, b.id DESC
                LIMIT ? OFFSET ?;
                """,
                [*params, limit, offset],
            ).fetchall()
        return total, [dict(row) for row in rows]
