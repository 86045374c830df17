"""PySpark job run by the project-setup workflow on Dataproc Serverless.

Aggregates ecommerce events from BigQuery into an Iceberg table in the
lakehouse dataset.
"""

import sys

from pyspark.sql import SparkSession
from pyspark.sql import functions as F


def main(project_id: str, tables_bucket: str) -> None:
    spark = SparkSession.builder.appName("lakehouse-agg-events").getOrCreate()

    events = (
        spark.read.format("bigquery")
        .option("table", f"{project_id}.gcp_primary_staging.thelook_ecommerce_events")
        .load()
    )
    agg = events.groupBy("event_type", F.to_date("created_at").alias("event_date")).agg(F.count("*").alias("events"))

    agg.writeTo("lakehouse_catalog.gcp_lakehouse_ds.agg_events_iceberg").using("iceberg").createOrReplace()
    spark.stop()


if __name__ == "__main__":
    main(sys.argv[1], sys.argv[2])
