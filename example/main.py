import asyncio

from evolution_server import EvolutionServer

from evo_dispatch.client import EvolutionClient
from evo_dispatch.config import ClientSettings
from evo_dispatch.errors import ErrorClass
from evo_dispatch.models import RetryPolicy


async def state_changed(snapshot):
    print(f"Connection state changed to: {snapshot.state}")
    print(f"Fetch latency: {snapshot.latency:.6f}s")


async def main():
    PORT = 8000
    server = EvolutionServer(instances=["main"], open_after_polls=3, api_key="demo-key", error_rate=0.1)
    server.failing_numbers = {"5511000000004": 429}
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    settings = ClientSettings(base_url=f"http://localhost:{PORT}", api_key="demo-key")
    policy = RetryPolicy(
        max_attempts=3,
        base_delay=0.5,
        multiplier=2.0,
        max_delay=4.0,
        non_retryable=frozenset({ErrorClass.validation, ErrorClass.authentication}),
    )

    try:
        async with EvolutionClient(settings) as client:
            connection = await client.monitor_connection(
                "main", max_attempts=10, interval_delay=1.0, on_state_change=state_changed
            )
            print(f"Final state: {connection.final_state.value} after {connection.attempts_used} attempts")

            numbers = [f"551100000000{i}" for i in range(1, 7)]
            dispatch = await client.dispatch(
                [(client.send_text("main", n, f"Hello {n}"), {"number": n}) for n in numbers],
                policy=policy,
                inter_item_delay=0.5,
            )

        report = dispatch.report
        print(f"Sent {report.successful}/{report.total} ({report.success_rate_percent}%)")
        print(f"Errors by class: {report.error_breakdown_by_class}")
        print(f"Performance grade: {report.performance_grade}")
        for recommendation in report.recommendations:
            print(f"- {recommendation.message}")
    except Exception as e:
        print(f"Error occurred: {e}")
    finally:
        await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
