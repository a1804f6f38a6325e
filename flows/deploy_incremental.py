from flows.etl_flows import incremental_load_flow

if __name__ == "__main__":
    # Deploy the nightly incremental load on a daily cron at 02:00 AM.
    # Duplicate triggers for the same day are harmless: the tick is the date.
    incremental_load_flow.deploy(
        name="daily-incremental-load",
        cron="0 2 * * *",               # 02:00 AM every day
        work_pool_name="default",
        work_queue_name="default"
    )

    print("✅ incremental_load_flow deployed as 'daily-incremental-load'")
