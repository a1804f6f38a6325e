#!/usr/bin/env python3
# pipeline_defs.py

"""
The sales star schema expressed as a pipeline:

  users   ──► dim_user   ─┐
  courses ──► dim_course ─┴─► fact_sales ──► agg_sales_by_country_month

Dimensions must succeed before facts, facts before the rollup, for the same
tick.  The rollup never reads past what fact_sales has consumed.
"""

from warehouse.models import AggregateSpec, DimensionRef, DimensionSpec, FactSpec
from warehouse.orchestrator import Pipeline, TaskSpec
from warehouse.validation import ForeignKeyExists, RequiredColumns, UniqueInsertKeys

# ───────────── Datasets & natural keys ───────────────────────────────────────
DATASET_KEYS = {
    "users":   ["user_id"],
    "courses": ["course_id"],
    "sales":   ["sale_id"],
}

# ───────────── Targets ───────────────────────────────────────────────────────
dim_user = DimensionSpec(
    name="dim_user",
    key_columns=("user_id",),
    attributes=("first_name", "last_name", "email", "country"),
)

dim_course = DimensionSpec(
    name="dim_course",
    key_columns=("course_id",),
    attributes=("title", "subject", "price_in_rubbles", "category", "sub_category"),
)

user_ref = DimensionRef(dimension="dim_user", columns={"user_id": "user_id"})
course_ref = DimensionRef(dimension="dim_course", columns={"course_id": "course_id"})

fact_sales = FactSpec(
    name="fact_sales",
    key_columns=("sale_id",),
    references={"user": user_ref, "course": course_ref},
    measures=("cost_in_rubbles",),
    event_time_column="sale_date",
)

agg_sales_by_country_month = AggregateSpec(
    name="agg_sales_by_country_month",
    fact="fact_sales",
    group_by=("user.country",),
    measures=("cost_in_rubbles",),
    grain="month",
)


def build_pipeline() -> Pipeline:
    return Pipeline([
        TaskSpec(
            task_id="merge_dim_user", dataset="users", kind="dimension", target=dim_user,
            rules=(UniqueInsertKeys(), RequiredColumns(["email"])),
        ),
        TaskSpec(
            task_id="merge_dim_course", dataset="courses", kind="dimension", target=dim_course,
            rules=(UniqueInsertKeys(), RequiredColumns(["title"])),
        ),
        TaskSpec(
            task_id="merge_fact_sales", dataset="sales", kind="fact", target=fact_sales,
            rules=(
                UniqueInsertKeys(),
                RequiredColumns(["cost_in_rubbles", "sale_date"]),
                ForeignKeyExists(user_ref, role="user"),
                ForeignKeyExists(course_ref, role="course"),
            ),
            depends_on=("merge_dim_user", "merge_dim_course"),
        ),
        TaskSpec(
            task_id="refresh_agg_sales", dataset="sales", kind="aggregate",
            target=agg_sales_by_country_month,
            depends_on=("merge_fact_sales",),
            bound_by="merge_fact_sales",
        ),
    ])


def register_datasets(ledger) -> None:
    for dataset, key_columns in DATASET_KEYS.items():
        ledger.register_dataset(dataset, key_columns)
