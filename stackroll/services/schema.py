"""Job store DDL.

`dev_jobs` holds the queue state per owner; `commit_ownership` maps short
commit hashes to the owner and project that first submitted them.
"""

DEV_JOBS_TABLE_DDL = """
create table if not exists dev_jobs (
  owner_id            varchar(200) primary key,
  last_submission_ts  timestamptz,
  report_ts           timestamptz,
  lease_id            uuid,
  lease_ts            timestamptz,
  fail_counter        integer not null default 0,
  created_at          timestamptz not null default now(),
  updated_at          timestamptz not null default now()
);

create index if not exists idx_dev_jobs_eligible
on dev_jobs (owner_id)
where lease_id is null
  and last_submission_ts is not null
  and (report_ts is null or report_ts < last_submission_ts);

create index if not exists idx_dev_jobs_leases
on dev_jobs (lease_ts)
where lease_id is not null;
"""

COMMIT_OWNERSHIP_TABLE_DDL = """
create table if not exists commit_ownership (
  owner_id     varchar(200) not null,
  project_id   varchar(150) not null,
  commit_hash  varchar(8) not null,
  commit_ts    bigint not null,
  primary key (owner_id, commit_hash)
);

create index if not exists idx_commit_ownership_hash
on commit_ownership (commit_hash)
include (owner_id, project_id, commit_ts);
"""

SCHEMA_DDL = DEV_JOBS_TABLE_DDL + COMMIT_OWNERSHIP_TABLE_DDL
