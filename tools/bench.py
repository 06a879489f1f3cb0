#!/usr/bin/env python3
"""
Load test harness for the AI CFO chat endpoint.

Features:
- Concurrent requests against a running server with httpx.AsyncClient
- Performance metrics (p50, p95, p99 latency)
- Status-code counts and fast-path hit rate
- Optional JSON results file
"""

import asyncio
import json
import logging
import os
import statistics
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("load_test")

DEFAULT_QUESTIONS = [
    "What is our revenue this year?",
    "What are total expenses year to date?",
    "How much do customers owe us?",
    "What do we owe vendors?",
    "Show revenue by month",
    "Revenue by customer by month",
    "Expenses by department",
    "How many payroll submissions are pending?",
    "Which invoices are overdue?",
    "List recent journal entries",
]


@dataclass
class TestConfig:
    """Configuration for load test."""
    base_url: str = os.getenv("CFO_BENCH_URL", "http://localhost:8000")
    concurrent_requests: int = 10
    total_requests: int = 50
    warmup_requests: int = 2
    timeout_s: float = 30.0
    test_questions: List[str] = field(default_factory=lambda: list(DEFAULT_QUESTIONS))
    output_file: Optional[str] = None


@dataclass
class TestResult:
    """Result of a single test request."""
    question: str
    response_time_ms: float
    status_code: int
    quick_match: bool
    queries: int
    error: Optional[str]


class LoadTester:
    """Posts the question set to ``/api/ai-cfo/chat`` and collects timings."""

    def __init__(self, config: TestConfig):
        self.config = config
        self.results: List[TestResult] = []

    async def run_single_query(self, client: httpx.AsyncClient, question: str, request_id: str) -> TestResult:
        start_time = time.perf_counter()
        try:
            resp = await client.post(
                "/api/ai-cfo/chat",
                json={"message": question, "userId": "bench"},
                headers={"x-request-id": request_id},
            )
            elapsed = (time.perf_counter() - start_time) * 1000
            body: Dict[str, Any] = resp.json() if resp.content else {}
            context = body.get("context") or {}
            return TestResult(
                question=question,
                response_time_ms=elapsed,
                status_code=resp.status_code,
                quick_match=bool(context.get("quick_match")),
                queries=int(context.get("queries") or 0),
                error=context.get("error") or body.get("error"),
            )
        except httpx.HTTPError as e:
            elapsed = (time.perf_counter() - start_time) * 1000
            logger.error(f"Request failed: {question} - {e!r}")
            return TestResult(question, elapsed, 0, False, 0, type(e).__name__)

    async def run_load_test(self) -> None:
        logger.info(f"Starting load test: {self.config.concurrent_requests} concurrent requests, "
                    f"{self.config.total_requests} total requests against {self.config.base_url}")
        questions = self.config.test_questions
        sem = asyncio.Semaphore(self.config.concurrent_requests)

        async with httpx.AsyncClient(base_url=self.config.base_url, timeout=self.config.timeout_s) as client:
            for i in range(self.config.warmup_requests):
                await self.run_single_query(client, questions[i % len(questions)], f"warmup_{i}")

            async def _bounded(i: int) -> TestResult:
                async with sem:
                    return await self.run_single_query(client, questions[i % len(questions)], f"bench_{i}")

            start_time = time.perf_counter()
            self.results = list(await asyncio.gather(*(_bounded(i) for i in range(self.config.total_requests))))
            logger.info(f"Load test completed in {time.perf_counter() - start_time:.2f} seconds")

    def calculate_metrics(self) -> Dict[str, Any]:
        if not self.results:
            return {}

        response_times = [r.response_time_ms for r in self.results]
        statuses = Counter(r.status_code for r in self.results)
        quick = [r for r in self.results if r.quick_match]

        metrics = {
            "total_requests": len(self.results),
            "successful_requests": statuses.get(200, 0),
            "status_counts": {str(k): v for k, v in sorted(statuses.items())},
            "fast_path_hit_rate": len(quick) / len(self.results) * 100,
            "p50_latency_ms": statistics.median(response_times),
            "p95_latency_ms": statistics.quantiles(response_times, n=20)[18] if len(response_times) > 1 else response_times[0],
            "p99_latency_ms": statistics.quantiles(response_times, n=100)[98] if len(response_times) > 1 else response_times[0],
            "min_latency_ms": min(response_times),
            "max_latency_ms": max(response_times),
            "avg_latency_ms": statistics.mean(response_times),
        }
        if quick:
            metrics["fast_path_metrics"] = {
                "avg_latency_ms": statistics.mean(r.response_time_ms for r in quick),
                "count": len(quick),
            }
        planned = [r for r in self.results if not r.quick_match and r.status_code == 200]
        if planned:
            metrics["planned_metrics"] = {
                "avg_latency_ms": statistics.mean(r.response_time_ms for r in planned),
                "avg_queries": statistics.mean(r.queries for r in planned),
                "count": len(planned),
            }
        return metrics

    def save_results(self) -> None:
        if not self.config.output_file:
            return
        results = {
            "config": {
                "base_url": self.config.base_url,
                "concurrent_requests": self.config.concurrent_requests,
                "total_requests": self.config.total_requests,
                "test_questions": self.config.test_questions,
            },
            "metrics": self.calculate_metrics(),
            "raw_results": [r.__dict__ for r in self.results],
        }
        with open(self.config.output_file, 'w') as f:
            json.dump(results, f, indent=2)
        logger.info(f"Results saved to {self.config.output_file}")

    def print_summary(self) -> None:
        metrics = self.calculate_metrics()
        if not metrics:
            logger.error("No results to display")
            return

        print("\n" + "="*60)
        print("LOAD TEST RESULTS")
        print("="*60)
        print(f"Total Requests: {metrics['total_requests']}")
        print(f"Successful: {metrics['successful_requests']}")
        print(f"Status Codes: {metrics['status_counts']}")
        print(f"Fast Path Hit Rate: {metrics['fast_path_hit_rate']:.1f}%")
        print()
        print("LATENCY METRICS:")
        print(f"  Average: {metrics['avg_latency_ms']:.1f}ms")
        print(f"  P50: {metrics['p50_latency_ms']:.1f}ms")
        print(f"  P95: {metrics['p95_latency_ms']:.1f}ms")
        print(f"  P99: {metrics['p99_latency_ms']:.1f}ms")
        print(f"  Min: {metrics['min_latency_ms']:.1f}ms")
        print(f"  Max: {metrics['max_latency_ms']:.1f}ms")
        if "fast_path_metrics" in metrics:
            print()
            print(f"FAST PATH: avg {metrics['fast_path_metrics']['avg_latency_ms']:.1f}ms "
                  f"over {metrics['fast_path_metrics']['count']} requests")
        if "planned_metrics" in metrics:
            planned = metrics["planned_metrics"]
            print(f"PLANNED: avg {planned['avg_latency_ms']:.1f}ms, "
                  f"{planned['avg_queries']:.1f} queries/plan over {planned['count']} requests")
        print("="*60)


def main():
    import argparse
    parser = argparse.ArgumentParser(description="Load test for the AI CFO chat endpoint")
    parser.add_argument("--url", default=TestConfig.base_url, help="Base URL of the running API")
    parser.add_argument("--concurrent", type=int, default=10, help="Number of concurrent requests")
    parser.add_argument("--total", type=int, default=50, help="Total number of requests")
    parser.add_argument("--warmup", type=int, default=2, help="Number of warmup requests")
    parser.add_argument("--output", default=None, help="Output file for JSON results")
    parser.add_argument("--questions-file", help="JSON file with test questions")
    args = parser.parse_args()

    config = TestConfig(
        base_url=args.url,
        concurrent_requests=args.concurrent,
        total_requests=args.total,
        warmup_requests=args.warmup,
        output_file=args.output,
    )
    if args.questions_file:
        with open(args.questions_file) as f:
            config.test_questions = json.load(f).get("questions", config.test_questions)

    tester = LoadTester(config)
    asyncio.run(tester.run_load_test())
    tester.print_summary()
    tester.save_results()


if __name__ == "__main__":
    main()
