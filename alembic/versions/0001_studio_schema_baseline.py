from alembic import op

revision = "0001_studio_schema_baseline"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.execute("""
CREATE TABLE IF NOT EXISTS categories (
    id SERIAL NOT NULL,
    name VARCHAR(100) NOT NULL,
    description TEXT,
    PRIMARY KEY (id),
    UNIQUE (name)
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS groups (
    id SERIAL NOT NULL,
    name VARCHAR(100) NOT NULL,
    description TEXT,
    PRIMARY KEY (id),
    UNIQUE (name)
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS group_categories (
    id SERIAL NOT NULL,
    group_id INTEGER NOT NULL,
    category_id INTEGER NOT NULL,
    PRIMARY KEY (id),
    CONSTRAINT uq_group_categories_pair UNIQUE (group_id, category_id),
    FOREIGN KEY (group_id) REFERENCES groups (id) ON DELETE CASCADE,
    FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE CASCADE
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS trainers (
    id SERIAL NOT NULL,
    name VARCHAR(255) NOT NULL,
    email VARCHAR(255),
    active BOOLEAN DEFAULT true NOT NULL,
    PRIMARY KEY (id)
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS classes (
    id SERIAL NOT NULL,
    name VARCHAR(255) NOT NULL,
    description TEXT,
    category_id INTEGER NOT NULL,
    difficulty VARCHAR(50),
    duration_minutes INTEGER,
    max_capacity INTEGER,
    equipment TEXT,
    active BOOLEAN DEFAULT true NOT NULL,
    PRIMARY KEY (id),
    FOREIGN KEY (category_id) REFERENCES categories (id) ON DELETE RESTRICT
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS members (
    id SERIAL NOT NULL,
    name VARCHAR(255) NOT NULL,
    email VARCHAR(255),
    status VARCHAR(20) DEFAULT 'active' NOT NULL,
    guest_count INTEGER DEFAULT 0 NOT NULL,
    credit NUMERIC(10, 2) DEFAULT 0 NOT NULL,
    created_at TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (id),
    UNIQUE (email)
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS plans (
    id SERIAL NOT NULL,
    name VARCHAR(255) NOT NULL,
    price NUMERIC(10, 2),
    duration_days INTEGER,
    active BOOLEAN DEFAULT true NOT NULL,
    PRIMARY KEY (id)
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS subscriptions (
    id SERIAL NOT NULL,
    member_id INTEGER NOT NULL,
    plan_id INTEGER,
    status VARCHAR(20) DEFAULT 'pending' NOT NULL,
    start_date DATE NOT NULL,
    end_date DATE NOT NULL,
    created_at TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (id),
    CONSTRAINT ck_subscriptions_status CHECK (status IN ('pending', 'active', 'cancelled', 'expired')),
    CONSTRAINT ck_subscriptions_dates CHECK (end_date >= start_date),
    FOREIGN KEY (member_id) REFERENCES members (id) ON DELETE CASCADE,
    FOREIGN KEY (plan_id) REFERENCES plans (id) ON DELETE SET NULL
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS group_session_allocations (
    id SERIAL NOT NULL,
    subscription_id INTEGER NOT NULL,
    group_id INTEGER NOT NULL,
    total_sessions INTEGER NOT NULL,
    sessions_remaining INTEGER NOT NULL,
    PRIMARY KEY (id),
    CONSTRAINT uq_allocations_subscription_group UNIQUE (subscription_id, group_id),
    CONSTRAINT ck_allocations_total CHECK (total_sessions >= 0),
    CONSTRAINT ck_allocations_remaining CHECK (sessions_remaining >= 0 AND sessions_remaining <= total_sessions),
    FOREIGN KEY (subscription_id) REFERENCES subscriptions (id) ON DELETE CASCADE,
    FOREIGN KEY (group_id) REFERENCES groups (id) ON DELETE RESTRICT
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS schedules (
    id SERIAL NOT NULL,
    class_id INTEGER NOT NULL,
    trainer_id INTEGER,
    repetition_type VARCHAR(10) NOT NULL,
    day_of_week SMALLINT,
    schedule_date DATE,
    start_date DATE,
    end_date DATE,
    start_time TIME WITHOUT TIME ZONE NOT NULL,
    end_time TIME WITHOUT TIME ZONE NOT NULL,
    max_participants INTEGER,
    is_active BOOLEAN DEFAULT true NOT NULL,
    created_at TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITHOUT TIME ZONE,
    PRIMARY KEY (id),
    CONSTRAINT ck_schedules_repetition_type CHECK (repetition_type IN ('once', 'daily', 'weekly')),
    CONSTRAINT ck_schedules_day_of_week CHECK (day_of_week IS NULL OR (day_of_week >= 0 AND day_of_week <= 6)),
    FOREIGN KEY (class_id) REFERENCES classes (id) ON DELETE RESTRICT,
    FOREIGN KEY (trainer_id) REFERENCES trainers (id) ON DELETE SET NULL
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS courses (
    id SERIAL NOT NULL,
    schedule_id INTEGER,
    class_id INTEGER NOT NULL,
    trainer_id INTEGER,
    course_date DATE NOT NULL,
    start_time TIME WITHOUT TIME ZONE NOT NULL,
    end_time TIME WITHOUT TIME ZONE NOT NULL,
    max_participants INTEGER NOT NULL,
    current_participants INTEGER DEFAULT 0 NOT NULL,
    status VARCHAR(20) DEFAULT 'scheduled' NOT NULL,
    is_active BOOLEAN DEFAULT true NOT NULL,
    created_at TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    updated_at TIMESTAMP WITHOUT TIME ZONE,
    PRIMARY KEY (id),
    CONSTRAINT ck_courses_status CHECK (status IN ('scheduled', 'in_progress', 'completed', 'cancelled')),
    CONSTRAINT ck_courses_max_participants CHECK (max_participants >= 0),
    CONSTRAINT ck_courses_current_participants CHECK (current_participants >= 0),
    CONSTRAINT ck_courses_time_range CHECK (end_time > start_time),
    FOREIGN KEY (schedule_id) REFERENCES schedules (id) ON DELETE SET NULL,
    FOREIGN KEY (class_id) REFERENCES classes (id) ON DELETE RESTRICT,
    FOREIGN KEY (trainer_id) REFERENCES trainers (id) ON DELETE SET NULL
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS registrations (
    id SERIAL NOT NULL,
    member_id INTEGER NOT NULL,
    course_id INTEGER NOT NULL,
    allocation_id INTEGER,
    status VARCHAR(20) DEFAULT 'registered' NOT NULL,
    qr_code VARCHAR(96) NOT NULL,
    notes TEXT,
    is_guest BOOLEAN DEFAULT false NOT NULL,
    registration_time TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP NOT NULL,
    cancelled_at TIMESTAMP WITHOUT TIME ZONE,
    session_refunded BOOLEAN DEFAULT false NOT NULL,
    PRIMARY KEY (id),
    UNIQUE (qr_code),
    CONSTRAINT ck_registrations_status CHECK (status IN ('registered', 'attended', 'cancelled', 'absent')),
    FOREIGN KEY (member_id) REFERENCES members (id) ON DELETE CASCADE,
    FOREIGN KEY (course_id) REFERENCES courses (id) ON DELETE RESTRICT,
    FOREIGN KEY (allocation_id) REFERENCES group_session_allocations (id) ON DELETE SET NULL
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS checkins (
    id SERIAL NOT NULL,
    registration_id INTEGER NOT NULL,
    member_id INTEGER NOT NULL,
    course_id INTEGER NOT NULL,
    checkin_time TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP NOT NULL,
    session_consumed BOOLEAN DEFAULT true NOT NULL,
    notes TEXT,
    PRIMARY KEY (id),
    UNIQUE (registration_id),
    FOREIGN KEY (registration_id) REFERENCES registrations (id) ON DELETE CASCADE,
    FOREIGN KEY (member_id) REFERENCES members (id) ON DELETE CASCADE,
    FOREIGN KEY (course_id) REFERENCES courses (id) ON DELETE RESTRICT
);
    """)

    op.execute("""
CREATE TABLE IF NOT EXISTS audit_logs (
    id SERIAL NOT NULL,
    actor_id INTEGER,
    action VARCHAR(50) NOT NULL,
    table_name VARCHAR(100) NOT NULL,
    record_id INTEGER,
    old_values TEXT,
    new_values TEXT,
    created_at TIMESTAMP WITHOUT TIME ZONE DEFAULT CURRENT_TIMESTAMP,
    PRIMARY KEY (id)
);
    """)

    op.execute("CREATE INDEX IF NOT EXISTS idx_group_categories_category_id ON group_categories (category_id);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_classes_category_id ON classes (category_id);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_subscriptions_member_status ON subscriptions (member_id, status);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_schedules_class_id ON schedules (class_id);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_courses_schedule_id ON courses (schedule_id);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_courses_date_status ON courses (course_date, status);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_registrations_course_status ON registrations (course_id, status);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_registrations_member_status ON registrations (member_id, status);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_checkins_course_id ON checkins (course_id);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_table_record ON audit_logs (table_name, record_id);")
    op.execute("CREATE INDEX IF NOT EXISTS idx_audit_logs_created_at ON audit_logs (created_at);")

    # One active booking per member and course
    op.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS uq_registrations_active_member_course "
        "ON registrations (member_id, course_id) WHERE status = 'registered';"
    )


def downgrade() -> None:
    for table in (
        "audit_logs",
        "checkins",
        "registrations",
        "courses",
        "schedules",
        "group_session_allocations",
        "subscriptions",
        "plans",
        "members",
        "classes",
        "trainers",
        "group_categories",
        "groups",
        "categories",
    ):
        op.execute(f"DROP TABLE IF EXISTS {table} CASCADE;")
