import asyncio
import unittest

from gachabot.singleflight import SingleFlight


class SingleFlightTests(unittest.IsolatedAsyncioTestCase):
    async def test_concurrent_callers_share_one_run(self) -> None:
        flights = SingleFlight()
        release = asyncio.Event()
        calls = 0

        async def load():
            nonlocal calls
            calls += 1
            await release.wait()
            return calls

        first = asyncio.ensure_future(flights.run("pool", load))
        second = asyncio.ensure_future(flights.run("pool", load))
        await asyncio.sleep(0)
        self.assertTrue(flights.in_flight("pool"))
        release.set()

        self.assertEqual(await asyncio.gather(first, second), [1, 1])
        self.assertEqual(calls, 1)
        self.assertFalse(flights.in_flight("pool"))

    async def test_errors_reach_every_caller_and_release_the_key(self) -> None:
        flights = SingleFlight()

        async def boom():
            await asyncio.sleep(0)
            raise RuntimeError("upstream down")

        results = await asyncio.gather(
            flights.run("board", boom),
            flights.run("board", boom),
            return_exceptions=True,
        )
        self.assertTrue(all(isinstance(result, RuntimeError) for result in results))
        self.assertFalse(flights.in_flight("board"))

        async def ok():
            return "fine"

        self.assertEqual(await flights.run("board", ok), "fine")

    async def test_keys_are_independent(self) -> None:
        flights = SingleFlight()

        async def value(result):
            await asyncio.sleep(0)
            return result

        results = await asyncio.gather(
            flights.run("pool", lambda: value("pool")),
            flights.run("mythic", lambda: value("mythic")),
        )
        self.assertEqual(results, ["pool", "mythic"])


if __name__ == "__main__":
    unittest.main()
