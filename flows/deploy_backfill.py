from flows.etl_flows import backfill_flow

if __name__ == "__main__":
    # ─────────────────────────────────────────────────────────────────────────
    # Backfills are started by hand (no schedule); pass `label` and the ledger
    # range as run parameters from the UI or `prefect deployment run`.
    # ─────────────────────────────────────────────────────────────────────────
    backfill_flow.deploy(
        name="manual-backfill",
        work_pool_name="default",
        work_queue_name="default",
    )

    print("✅ backfill_flow deployed as 'manual-backfill'")
