"""
Database Schema Reference
=========================

This file provides a quick reference for all database tables and columns.
For actual SQLAlchemy models, see: src/db/models.py

All *_ms columns and the epoch-ms timestamps below are milliseconds since the
Unix epoch (BIGINT). Enum columns are stored as VARCHAR(20) holding the
enum value.
"""

# ============================================================================
# USERS - Account owners (the billing provider's app user id is users.id)
# ============================================================================
#
# | Column                 | Type          | Constraints                   |
# |------------------------|---------------|-------------------------------|
# | id                     | VARCHAR(36)   | PRIMARY KEY                   |
# | external_id            | VARCHAR(255)  | NULLABLE, INDEX               |
# | active_subscription_id | VARCHAR(36)   | NULLABLE                      |
# | created_at             | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()       |


# ============================================================================
# SUBSCRIPTIONS - Usage ledger, one credit counter per period
# ============================================================================
#
# | Column              | Type          | Constraints                      |
# |---------------------|---------------|----------------------------------|
# | id                  | VARCHAR(36)   | PRIMARY KEY                      |
# | user_id             | VARCHAR(36)   | NOT NULL, FK(users.id), INDEX    |
# | tier                | VARCHAR(20)   | alpha|free|weekly|monthly|yearly |
# | status              | VARCHAR(20)   | active|canceled|expired|in_grace |
# | product_id          | VARCHAR(100)  | NOT NULL, DEFAULT 'free-tier'    |
# | platform            | VARCHAR(20)   | NULLABLE                         |
# | consumed_credits    | INTEGER       | NOT NULL, >= 0                   |
# | period_start        | BIGINT        | epoch ms                         |
# | custom_credit_limit | INTEGER       | NULLABLE, overrides tier limit   |
# | last_verified_at    | BIGINT        | epoch ms                         |
# | expires_at          | BIGINT        | NULLABLE, epoch ms               |
# | version             | INTEGER       | optimistic concurrency counter   |
# | created_at          | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()          |
#
# Writes:
#   Only src/services/ledger.py writes consumed_credits, period_start and
#   custom_credit_limit, always as UPDATE ... WHERE id = ? AND version = ?.


# ============================================================================
# SUBSCRIPTION_EVENTS - Billing audit log
# ============================================================================
#
# | Column          | Type         | Constraints                         |
# |-----------------|--------------|-------------------------------------|
# | id              | VARCHAR(36)  | PRIMARY KEY                         |
# | user_id         | VARCHAR(36)  | NOT NULL, INDEX                     |
# | event_type      | VARCHAR(50)  | NOT NULL, INDEX                     |
# | product_id      | VARCHAR(100) | NOT NULL                            |
# | tier            | VARCHAR(20)  | NOT NULL (effective tier)           |
# | status          | VARCHAR(20)  | NOT NULL                            |
# | store           | VARCHAR(30)  | NULLABLE                            |
# | entitlement_ids | JSON         | NULLABLE                            |
# | expires_at      | BIGINT       | NULLABLE                            |
# | tier_reset      | BOOLEAN      | NOT NULL, DEFAULT FALSE             |
# | recorded_at     | BIGINT       | epoch ms                            |


# ============================================================================
# SUBJECTS - User content generations are made from
# ============================================================================
#
# | Column                  | Type          | Constraints                  |
# |-------------------------|---------------|------------------------------|
# | id                      | VARCHAR(36)   | PRIMARY KEY                  |
# | owner_id                | VARCHAR(36)   | NOT NULL, FK(users.id)       |
# | content                 | TEXT          | NOT NULL                     |
# | title                   | VARCHAR(255)  | NULLABLE                     |
# | primary_audio_output_id | VARCHAR(36)   | NULLABLE                     |
# | primary_video_output_id | VARCHAR(36)   | NULLABLE                     |
# | updated_at              | BIGINT        | NULLABLE, epoch ms           |
# | created_at              | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()      |


# ============================================================================
# GENERATION_TASKS / GENERATION_OUTPUTS - Provider tasks and their results
# ============================================================================
#
# generation_tasks
# | Column       | Type         | Constraints                          |
# |--------------|--------------|--------------------------------------|
# | task_id      | VARCHAR(100) | PRIMARY KEY (provider's task id)     |
# | owner_id     | VARCHAR(36)  | NOT NULL, INDEX                      |
# | subject_id   | VARCHAR(36)  | NOT NULL, INDEX                      |
# | kind         | VARCHAR(20)  | music|video                          |
# | output_count | INTEGER      | NOT NULL, > 0                        |
# | credit_cost  | INTEGER      | NOT NULL (refunded on failure)       |
# | created_at   | BIGINT       | epoch ms                             |
#
# generation_outputs
# | Column          | Type         | Constraints                       |
# |-----------------|--------------|-----------------------------------|
# | id              | VARCHAR(36)  | PRIMARY KEY                       |
# | task_id         | VARCHAR(100) | FK(generation_tasks) CASCADE      |
# | subject_id      | VARCHAR(36)  | NOT NULL                          |
# | kind            | VARCHAR(20)  | music|video                       |
# | output_index    | INTEGER      | UNIQUE(task_id, output_index)     |
# | status          | VARCHAR(20)  | pending|ready|failed              |
# | result_ref      | TEXT         | NULLABLE (media URL)              |
# | title           | VARCHAR(255) | NULLABLE                          |
# | duration        | FLOAT        | NULLABLE (seconds)                |
# | result_metadata | JSON         | NULLABLE                          |
# | error_message   | TEXT         | NULLABLE                          |
# | created_at      | BIGINT       | epoch ms                          |
# | updated_at      | BIGINT       | epoch ms                          |
#
# Status transitions:
#   pending -> ready | failed, once; terminal states never change.


# ============================================================================
# QUEUE_ENTRIES - Per-provider dispatch queue
# ============================================================================
#
# | Column              | Type         | Constraints                      |
# |---------------------|--------------|----------------------------------|
# | id                  | INTEGER      | PRIMARY KEY, AUTOINCREMENT       |
# | provider_type       | VARCHAR(20)  | music|video                      |
# | owner_id            | VARCHAR(36)  | NOT NULL, INDEX                  |
# | subject_id          | VARCHAR(36)  | NULLABLE, INDEX                  |
# | payload             | JSON         | NOT NULL                         |
# | status              | VARCHAR(20)  | pending|inFlight|completed|failed|
# | correlation_task_id | VARCHAR(100) | NULLABLE, INDEX                  |
# | error_message       | TEXT         | NULLABLE                         |
# | created_at          | BIGINT       | epoch ms, FIFO key with id       |
# | started_at          | BIGINT       | NULLABLE, rate-limit window key  |
# | completed_at        | BIGINT       | NULLABLE                         |
# | updated_at          | BIGINT       | epoch ms                         |


# ============================================================================
# API_KEYS - Stores API keys for authentication
# ============================================================================
#
# | Column     | Type          | Constraints                            |
# |------------|---------------|----------------------------------------|
# | id         | VARCHAR(36)   | PRIMARY KEY                            |
# | key_hash   | VARCHAR(255)  | NOT NULL, UNIQUE, INDEX (bcrypt)       |
# | key_prefix | VARCHAR(12)   | NOT NULL, INDEX ("gk_" + 8 chars)      |
# | name       | VARCHAR(100)  | NOT NULL                               |
# | user_id    | VARCHAR(36)   | NOT NULL, FK(users.id), INDEX          |
# | scopes     | JSON          | ["music", "video"]                     |
# | is_active  | BOOLEAN       | NOT NULL, DEFAULT TRUE                 |
# | created_at | TIMESTAMP(TZ) | NOT NULL, DEFAULT now()                |
# | expires_at | TIMESTAMP(TZ) | NULLABLE                               |


# ============================================================================
# INDEXES
# ============================================================================
#
# | Table              | Index Name                           | Columns                  |
# |--------------------|--------------------------------------|--------------------------|
# | generation_outputs | ix_generation_outputs_subject_status | subject_id, status       |
# | queue_entries      | ix_queue_entries_provider_status     | provider_type, status    |
# | queue_entries      | ix_queue_entries_correlation_task_id | correlation_task_id      |


# ============================================================================
# TIERS
# ============================================================================
#
# | Tier    | Credits | Period   | Product id      |
# |---------|---------|----------|-----------------|
# | alpha   | 3       | never    | -               |
# | free    | 7       | 30 days  | free-tier       |
# | weekly  | 25      | 7 days   | premium_weekly  |
# | monthly | 90      | 30 days  | premium_monthly |
# | yearly  | 84*     | 30 days  | premium_annual  |
#
# * 1000 per year stored as custom_credit_limit = ceil(1000 / 12)
