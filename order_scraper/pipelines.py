from datetime import date
from pathlib import Path
from typing import Any

import orjson

from order_scraper.finalize import CSV_HEADERS, ROW_KEYS, csv_writer, row_values


class OrderExportPipeline:
    """Write finalized item rows to ``orders-<date>.csv`` plus a JSONL copy.

    Files are opened on the first row only, so a run that finds no orders
    leaves nothing behind.
    """

    def __init__(self, output_dir: str = "data"):
        self.output_dir = Path(output_dir)
        self.csv_path = None
        self.jsonl_path = None
        self.rows_written = 0
        self.stamp = date.today().isoformat()

    @classmethod
    def from_crawler(cls, crawler):
        return cls(output_dir=crawler.settings.get("OUTPUT_DIR", "data"))

    def open_spider(self, spider):
        self.stamp = date.today().isoformat()

    def _open_files(self):
        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.csv_path = self.output_dir / f"orders-{self.stamp}.csv"
        self.jsonl_path = self.output_dir / f"orders-{self.stamp}.jsonl"
        self.csv_f = self.csv_path.open("w", encoding="utf-8", newline="")
        self.jsonl_f = self.jsonl_path.open("wb")
        self.writer = csv_writer(self.csv_f)
        self.writer.writerow(CSV_HEADERS)

    def close_spider(self, spider):
        if hasattr(self, "csv_f"):
            self.csv_f.close()
            self.jsonl_f.close()
            spider.logger.info(f"[EXPORT] rows={self.rows_written} csv={self.csv_path} jsonl={self.jsonl_path}")

    def process_item(self, item: Any, spider) -> Any:
        row = dict(item)
        if not row.get("order_id") or not row.get("product_name"):
            spider.logger.warning(f"[PIPELINE-SKIP] missing fields order_id={row.get('order_id')} product_present={bool(row.get('product_name'))}")
            if spider.crawler and getattr(spider.crawler, "stats", None):
                spider.crawler.stats.inc_value("pipeline/dropped_missing_fields", 1)
            return item
        if not hasattr(self, "csv_f"):
            self._open_files()
        self.writer.writerow(row_values(row))
        self.jsonl_f.write(orjson.dumps({k: row.get(k, "") for k in ROW_KEYS}, option=orjson.OPT_APPEND_NEWLINE))
        self.csv_f.flush()
        self.jsonl_f.flush()
        self.rows_written += 1
        return item
