import os
import random

from locust import HttpUser, task, between

SITE = os.getenv("BENCH_SITE", "bench-site")
MONTH = os.getenv("BENCH_MONTH", "2024-05")


class ValidatorUser(HttpUser):
    wait_time = between(1, 3)

    def on_start(self):
        self.headers = {
            "X-Actor": "load@mine.example",
            "X-Actor-Role": "validator",
            "X-Actor-Sites": "*",
        }

    @task(3)
    def view_day(self):
        day = f"{MONTH}-{random.randint(1, 28):02d}"
        self.client.get(
            "/api/site-admin/day",
            params={"site": SITE, "date": day},
            headers=self.headers,
            name="/api/site-admin/day",
        )

    @task(2)
    def month_summary(self):
        self.client.get(
            "/api/site-admin/reconciliation/month-summary",
            params={"site": SITE, "month_ym": MONTH, "metric_key": "hauling|production_ore_tonnes_hauled"},
            headers=self.headers,
        )

    @task(1)
    def add_activity(self):
        day = f"{MONTH}-{random.randint(1, 28):02d}"
        payload = {
            "site": SITE,
            "date": day,
            "dn": random.choice(["DS", "NS"]),
            "operator": "load@mine.example",
            "payload": {
                "activity": "Hauling",
                "sub_activity": "Production",
                "values": {"Equipment": "TR01", "Material": "Ore", "Tonnes Hauled": 40},
            },
        }
        self.client.post(
            "/api/site-admin/validated/add-activity",
            json=payload,
            headers=self.headers,
            name="/api/site-admin/validated/add-activity",
        )
