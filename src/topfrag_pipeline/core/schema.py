"""Relational schema for match state, processing jobs and derived summaries.

Statements are idempotent (IF NOT EXISTS) and executed in order by
DatabaseManager.create_schema().
"""

MATCH_TYPES = ("hltv", "matchmaking", "faceit", "esportal", "other")

JOB_STATUSES = ("pending", "processing", "completed", "failed")

CLUTCH_SIZES = (1, 2, 3, 4, 5)


def _clutch_columns(prefix: str = "") -> str:
    columns = []
    for size in CLUTCH_SIZES:
        columns.append(f"{prefix}clutches_1v{size}_attempted INTEGER NOT NULL DEFAULT 0")
        columns.append(f"{prefix}clutches_1v{size}_successful INTEGER NOT NULL DEFAULT 0")
    return ",\n    ".join(columns)


SCHEMA_STATEMENTS = [
    """
    CREATE TABLE IF NOT EXISTS matches (
        id SERIAL PRIMARY KEY,
        match_hash VARCHAR(64) UNIQUE,
        map VARCHAR(50) NOT NULL DEFAULT 'Unknown',
        winning_team VARCHAR(10) NOT NULL DEFAULT 'A',
        winning_team_score INTEGER NOT NULL DEFAULT 0,
        losing_team_score INTEGER NOT NULL DEFAULT 0,
        match_type VARCHAR(20) NOT NULL DEFAULT 'other',
        total_rounds INTEGER NOT NULL DEFAULT 0,
        total_fight_events INTEGER NOT NULL DEFAULT 0,
        total_grenade_events INTEGER NOT NULL DEFAULT 0,
        playback_ticks BIGINT NOT NULL DEFAULT 0,
        match_datetime TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK (losing_team_score >= 0),
        CHECK (winning_team_score >= losing_team_score),
        CHECK (match_type IN ('hltv', 'matchmaking', 'faceit', 'esportal', 'other'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS processing_jobs (
        id SERIAL PRIMARY KEY,
        uuid UUID NOT NULL UNIQUE,
        match_id INTEGER REFERENCES matches(id) ON DELETE SET NULL,
        status VARCHAR(20) NOT NULL DEFAULT 'pending',
        progress_percent INTEGER NOT NULL DEFAULT 0,
        current_step VARCHAR(255),
        error_message TEXT,
        started_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        completed_at TIMESTAMPTZ,
        updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        CHECK (status IN ('pending', 'processing', 'completed', 'failed')),
        CHECK (progress_percent BETWEEN 0 AND 100),
        CHECK ((completed_at IS NOT NULL) = (status IN ('completed', 'failed')))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS players (
        id SERIAL PRIMARY KEY,
        steam_id VARCHAR(255) NOT NULL UNIQUE,
        name VARCHAR(255) NOT NULL DEFAULT 'Unknown',
        first_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        last_seen_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        total_matches INTEGER NOT NULL DEFAULT 0
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS match_players (
        id SERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        player_id INTEGER NOT NULL REFERENCES players(id) ON DELETE CASCADE,
        team VARCHAR(10) NOT NULL,
        UNIQUE (match_id, player_id),
        CHECK (team IN ('A', 'B'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS gunfight_events (
        id BIGSERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        round_number INTEGER NOT NULL,
        round_time INTEGER NOT NULL,
        tick_timestamp BIGINT NOT NULL,
        player_1_steam_id VARCHAR(255) NOT NULL,
        player_2_steam_id VARCHAR(255) NOT NULL,
        player_1_side VARCHAR(2),
        player_2_side VARCHAR(2),
        player_1_hp_start INTEGER NOT NULL,
        player_2_hp_start INTEGER NOT NULL,
        player_1_armor INTEGER NOT NULL DEFAULT 0,
        player_2_armor INTEGER NOT NULL DEFAULT 0,
        player_1_flashed BOOLEAN NOT NULL DEFAULT FALSE,
        player_2_flashed BOOLEAN NOT NULL DEFAULT FALSE,
        player_1_weapon VARCHAR(50) NOT NULL,
        player_2_weapon VARCHAR(50) NOT NULL,
        player_1_equipment_value INTEGER NOT NULL DEFAULT 0,
        player_2_equipment_value INTEGER NOT NULL DEFAULT 0,
        player_1_x REAL NOT NULL,
        player_1_y REAL NOT NULL,
        player_1_z REAL NOT NULL,
        player_2_x REAL NOT NULL,
        player_2_y REAL NOT NULL,
        player_2_z REAL NOT NULL,
        distance REAL NOT NULL,
        headshot BOOLEAN NOT NULL DEFAULT FALSE,
        wallbang BOOLEAN NOT NULL DEFAULT FALSE,
        penetrated_objects INTEGER NOT NULL DEFAULT 0,
        victor_steam_id VARCHAR(255),
        damage_dealt INTEGER NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_gunfight_match_round ON gunfight_events (match_id, round_number)",
    "CREATE INDEX IF NOT EXISTS idx_gunfight_match_tick ON gunfight_events (match_id, tick_timestamp)",
    """
    CREATE TABLE IF NOT EXISTS damage_events (
        id BIGSERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        round_number INTEGER NOT NULL,
        round_time INTEGER NOT NULL,
        tick_timestamp BIGINT NOT NULL,
        attacker_steam_id VARCHAR(255) NOT NULL,
        victim_steam_id VARCHAR(255) NOT NULL,
        damage INTEGER NOT NULL,
        armor_damage INTEGER NOT NULL,
        health_damage INTEGER NOT NULL,
        headshot BOOLEAN NOT NULL DEFAULT FALSE,
        weapon VARCHAR(50) NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_damage_match_round ON damage_events (match_id, round_number)",
    """
    CREATE TABLE IF NOT EXISTS grenade_events (
        id BIGSERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        round_number INTEGER NOT NULL,
        round_time INTEGER NOT NULL,
        tick_timestamp BIGINT NOT NULL,
        player_steam_id VARCHAR(255) NOT NULL,
        grenade_type VARCHAR(20) NOT NULL,
        player_x REAL NOT NULL,
        player_y REAL NOT NULL,
        player_z REAL NOT NULL,
        player_aim_x REAL NOT NULL,
        player_aim_y REAL NOT NULL,
        player_aim_z REAL NOT NULL,
        grenade_final_x REAL,
        grenade_final_y REAL,
        grenade_final_z REAL,
        damage_dealt INTEGER NOT NULL DEFAULT 0,
        flash_duration REAL,
        affected_players JSONB,
        throw_type VARCHAR(20) NOT NULL,
        effectiveness_rating INTEGER,
        smoke_blocking_duration INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_grenade_match_round ON grenade_events (match_id, round_number)",
    """
    CREATE TABLE IF NOT EXISTS round_events (
        id BIGSERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        round_number INTEGER NOT NULL,
        round_time INTEGER,
        tick_timestamp BIGINT NOT NULL,
        event_type VARCHAR(10) NOT NULL,
        winner VARCHAR(2),
        duration INTEGER,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_round_match_round ON round_events (match_id, round_number)",
    """
    CREATE TABLE IF NOT EXISTS ingested_batches (
        id SERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        job_uuid UUID NOT NULL,
        event_name VARCHAR(20) NOT NULL,
        batch_index INTEGER NOT NULL,
        total_batches INTEGER NOT NULL,
        is_last BOOLEAN NOT NULL,
        row_count INTEGER NOT NULL DEFAULT 0,
        received_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (match_id, event_name, batch_index)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS match_summaries (
        id SERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL UNIQUE REFERENCES matches(id) ON DELETE CASCADE,
        total_kills INTEGER NOT NULL DEFAULT 0,
        total_deaths INTEGER NOT NULL DEFAULT 0,
        total_assists INTEGER NOT NULL DEFAULT 0,
        total_headshots INTEGER NOT NULL DEFAULT 0,
        total_wallbangs INTEGER NOT NULL DEFAULT 0,
        total_damage INTEGER NOT NULL DEFAULT 0,
        total_he_damage INTEGER NOT NULL DEFAULT 0,
        total_effective_flashes INTEGER NOT NULL DEFAULT 0,
        total_smokes_used INTEGER NOT NULL DEFAULT 0,
        total_smoke_blocking_duration INTEGER NOT NULL DEFAULT 0,
        total_molotovs_used INTEGER NOT NULL DEFAULT 0,
        total_first_kills INTEGER NOT NULL DEFAULT 0,
        total_first_deaths INTEGER NOT NULL DEFAULT 0,
        """
    + _clutch_columns("total_")
    + """,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS player_match_summaries (
        id SERIAL PRIMARY KEY,
        match_id INTEGER NOT NULL REFERENCES matches(id) ON DELETE CASCADE,
        player_id INTEGER NOT NULL REFERENCES players(id) ON DELETE CASCADE,
        kills INTEGER NOT NULL DEFAULT 0,
        deaths INTEGER NOT NULL DEFAULT 0,
        assists INTEGER NOT NULL DEFAULT 0,
        headshots INTEGER NOT NULL DEFAULT 0,
        wallbangs INTEGER NOT NULL DEFAULT 0,
        first_kills INTEGER NOT NULL DEFAULT 0,
        first_deaths INTEGER NOT NULL DEFAULT 0,
        total_damage INTEGER NOT NULL DEFAULT 0,
        average_damage_per_round REAL NOT NULL DEFAULT 0,
        damage_taken INTEGER NOT NULL DEFAULT 0,
        he_damage INTEGER NOT NULL DEFAULT 0,
        effective_flashes INTEGER NOT NULL DEFAULT 0,
        enemy_flash_duration REAL NOT NULL DEFAULT 0,
        team_flash_duration REAL NOT NULL DEFAULT 0,
        smokes_used INTEGER NOT NULL DEFAULT 0,
        smoke_blocking_duration INTEGER NOT NULL DEFAULT 0,
        average_smoke_blocking_duration REAL NOT NULL DEFAULT 0,
        molotovs_used INTEGER NOT NULL DEFAULT 0,
        he_grenades_used INTEGER NOT NULL DEFAULT 0,
        flashbangs_used INTEGER NOT NULL DEFAULT 0,
        grenades_thrown INTEGER NOT NULL DEFAULT 0,
        grenade_damage INTEGER NOT NULL DEFAULT 0,
        flashes_leading_to_kills INTEGER NOT NULL DEFAULT 0,
        trade_kills INTEGER NOT NULL DEFAULT 0,
        traded_deaths INTEGER NOT NULL DEFAULT 0,
        trade_opportunities INTEGER NOT NULL DEFAULT 0,
        """
    + _clutch_columns()
    + """,
        kd_ratio REAL NOT NULL DEFAULT 0,
        headshot_percentage REAL NOT NULL DEFAULT 0,
        clutch_success_rate REAL NOT NULL DEFAULT 0,
        opener_score REAL NOT NULL DEFAULT 0,
        closer_score REAL NOT NULL DEFAULT 0,
        support_score REAL NOT NULL DEFAULT 0,
        fragger_score REAL NOT NULL DEFAULT 0,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (match_id, player_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS groups (
        id SERIAL PRIMARY KEY,
        name VARCHAR(255) NOT NULL UNIQUE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS group_members (
        group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
        steam_id VARCHAR(255) NOT NULL,
        joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        PRIMARY KEY (group_id, steam_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS leaderboard_entries (
        id SERIAL PRIMARY KEY,
        group_id INTEGER NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
        leaderboard_type VARCHAR(20) NOT NULL,
        time_window VARCHAR(10) NOT NULL,
        player_id INTEGER NOT NULL REFERENCES players(id) ON DELETE CASCADE,
        position INTEGER NOT NULL,
        value REAL NOT NULL,
        window_start TIMESTAMPTZ NOT NULL,
        window_end TIMESTAMPTZ NOT NULL,
        calculated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
        UNIQUE (group_id, leaderboard_type, time_window, player_id)
    )
    """,
]
