#!/usr/bin/env python3
"""
Summary Reconciliation Worker - Recomputes project summaries from stored detections
Picks up projects whose detections are newer than their summary (or that have none)
and rewrites the summary with the same aggregation the analyze endpoint uses
"""
import os
import time
import logging
from datetime import datetime, timezone

from .config import LOG_LEVEL
from .analysis_pipeline import aggregate_summary
from .detection_store import DetectionStore


class SummaryReconcileWorker:
    """Continuous summary reconciliation worker"""

    def __init__(self, store=None):
        # Worker configuration
        self.worker_id = os.getenv('WORKER_ID', f'summary_reconcile_{int(time.time())}')
        self.scan_interval = int(os.getenv('SCAN_INTERVAL', '30'))  # seconds
        self.batch_size = int(os.getenv('BATCH_SIZE', '50'))

        # Logging
        self.setup_logging()
        self.store = store

    def setup_logging(self):
        """Configure logging"""
        logging.basicConfig(
            level=getattr(logging, LOG_LEVEL, logging.INFO),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        self.logger = logging.getLogger('summary_reconcile')

    def connect_to_database(self):
        """Create the pooled PostgreSQL store"""
        if self.store is not None:
            return True
        try:
            self.store = DetectionStore.from_environment()
            return True
        except ValueError:
            raise
        except Exception as e:
            self.logger.error(f"Failed to connect to database: {e}")
            return False

    def reconcile_project(self, project_id):
        """Rewrite one project's summary, keeping the models already recorded on it"""
        existing = self.store.get_summary(project_id)
        filters = existing['filters'] if existing else []
        summary = aggregate_summary(self.store, project_id, filters, datetime.now(timezone.utc))
        counts = summary['land_covers'][0]['counts'] if summary['land_covers'] else {}
        if existing:
            self.logger.debug(f"Reconciled summary for project {project_id} ({sum(counts.values())} detections)")
        else:
            self.logger.debug(f"Created summary for project {project_id} ({sum(counts.values())} detections)")
        return summary

    def run_reconcile_batch(self):
        """Process one batch of projects needing a fresh summary"""
        try:
            project_ids = self.store.find_projects_needing_summary(self.batch_size)
        except Exception as e:
            self.logger.error(f"Error finding projects needing reconciliation: {e}")
            return 0

        if not project_ids:
            return 0

        self.logger.info(f"Reconciling summaries for {len(project_ids)} projects")

        success_count = 0
        for project_id in project_ids:
            try:
                self.reconcile_project(project_id)
                success_count += 1
            except Exception as e:
                self.logger.error(f"Reconciliation failed for project {project_id}: {e}")

        self.logger.info(f"Reconciled {success_count}/{len(project_ids)} summaries")
        return success_count

    def run_continuous(self):
        """Main continuous processing loop"""
        self.logger.info(f"Starting summary reconciliation worker ({self.worker_id})")
        self.logger.info(f"Scan interval: {self.scan_interval}s, Batch size: {self.batch_size}")

        try:
            while True:
                processed = self.run_reconcile_batch()

                if processed > 0:
                    time.sleep(min(self.scan_interval, 2))  # Quick scan when busy
                else:
                    time.sleep(self.scan_interval)  # Normal scan when idle

        except KeyboardInterrupt:
            self.logger.info("Stopping summary reconciliation worker...")
        finally:
            if self.store:
                self.store.close()
            self.logger.info("Summary reconciliation worker stopped")

    def run(self):
        """Main entry point"""
        if not self.connect_to_database():
            return 1

        self.run_continuous()
        return 0


def main():
    """Main entry point"""
    try:
        worker = SummaryReconcileWorker()
        return worker.run()

    except ValueError as e:
        print(f"Configuration error: {e}")
        return 1
    except Exception as e:
        print(f"Summary reconciliation worker error: {e}")
        return 1


if __name__ == "__main__":
    import sys
    sys.exit(main())
