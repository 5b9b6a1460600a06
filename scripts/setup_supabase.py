#!/usr/bin/env python3
"""
Supabase Setup Helper for coursegen

Verifies the Supabase connection, checks that the course content and
generation result tables exist, and prints the schema SQL when they don't.

Usage:
    python scripts/setup_supabase.py
    python scripts/setup_supabase.py --print-sql

Requirements:
    - Set SUPABASE_URL and SUPABASE_SERVICE_KEY environment variables
    - Or create a .env file with these values
"""

import argparse
import sys

from coursegen.config import config

REQUIRED_TABLES = [
    "courses",
    "course_sections",
    "course_articles",
    "course_quizzes",
    "course_quiz_questions",
    "generation_results",
]

SCHEMA_SQL = """
create table if not exists courses (
    course_id text primary key,
    title text not null,
    slug text unique,
    description text,
    level text default 'BEGINNER',
    outline_json jsonb,
    generation_status text default 'not_started',
    generation_error text,
    created_at timestamptz default now(),
    updated_at timestamptz default now()
);

create table if not exists course_sections (
    section_id text primary key,
    course_id text not null references courses(course_id) on delete cascade,
    title text not null,
    description text,
    order_index integer default 0,
    generation_status text default 'not_started',
    generation_error text,
    created_at timestamptz default now(),
    updated_at timestamptz default now()
);

create table if not exists course_articles (
    article_id text primary key,
    section_id text not null references course_sections(section_id) on delete cascade,
    course_id text not null references courses(course_id) on delete cascade,
    title text not null,
    slug text unique,
    description text,
    order_index integer default 0,
    content text,
    is_content_generated boolean default false,
    generated_at timestamptz,
    generation_status text default 'not_started',
    generation_error text,
    created_at timestamptz default now(),
    updated_at timestamptz default now()
);

create table if not exists course_quizzes (
    quiz_id text primary key,
    quiz_type text not null check (quiz_type in ('article', 'section', 'final_exam')),
    course_id text not null references courses(course_id) on delete cascade,
    section_id text references course_sections(section_id) on delete cascade,
    article_id text references course_articles(article_id) on delete cascade,
    title text not null,
    description text,
    pass_mark_percentage numeric default 65.0,
    generation_status text default 'generated',
    generation_error text,
    created_at timestamptz default now(),
    updated_at timestamptz default now()
);

create table if not exists course_quiz_questions (
    id bigserial primary key,
    quiz_id text not null references course_quizzes(quiz_id) on delete cascade,
    question_type text not null,
    question_text text not null,
    options_json jsonb,
    correct_answer text,
    explanation text,
    order_index integer default 0,
    points numeric default 1.0
);

create table if not exists generation_results (
    job_id text primary key,
    queue_name text not null,
    job_type text not null,
    status text not null check (status in ('completed', 'failed')),
    result jsonb,
    error text,
    course_id text,
    section_id text,
    article_id text,
    finished_at timestamptz default now()
);

create index if not exists idx_course_quizzes_course on course_quizzes(course_id);
create index if not exists idx_generation_results_course on generation_results(course_id);
"""


def check_supabase_connection():
    """Test the Supabase connection."""
    if not config.supabase_configured:
        print("\n❌ Missing Supabase credentials!")
        print("\nSet these environment variables:")
        print("  SUPABASE_URL=https://your-project.supabase.co")
        print("  SUPABASE_SERVICE_KEY=eyJhbGci...")
        return None

    from coursegen.database.client import get_supabase_admin_client

    print(f"\n🔗 Connecting to: {config.SUPABASE_URL}")
    try:
        client = get_supabase_admin_client()
    except Exception as e:
        print(f"❌ Connection failed: {e}")
        return None

    print("✅ Supabase client created")
    return client


def check_tables(client):
    """Check which tables exist in Supabase."""
    print("\n📋 Checking required tables:")

    missing = []
    for table in REQUIRED_TABLES:
        try:
            client.table(table).select("*").limit(1).execute()
            print(f"   ✅ {table}")
        except Exception as e:
            if "does not exist" in str(e):
                print(f"   ❌ {table} (missing)")
                missing.append(table)
            else:
                print(f"   ⚠️  {table} (error: {e})")

    return missing


def main(argv=None):
    parser = argparse.ArgumentParser(description="Verify the coursegen Supabase schema")
    parser.add_argument("--print-sql", action="store_true", help="Print the schema SQL and exit")
    args = parser.parse_args(argv)

    if args.print_sql:
        print(SCHEMA_SQL)
        return 0

    print("=" * 60)
    print("🚀 coursegen - Supabase Setup Helper")
    print("=" * 60)

    client = check_supabase_connection()
    if client is None:
        return 1

    missing = check_tables(client)
    if missing:
        print(f"\n⚠️  Missing {len(missing)} table(s)")
        print("\nRun the following in the Supabase SQL Editor, then run this script again:")
        print(SCHEMA_SQL)
        return 1

    print("\n✅ All tables exist!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
