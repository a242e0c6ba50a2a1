"""
Sample sources: where recent glucose readings come from.

Every source implements `get_samples_in_range(min_time, max_time)` with epoch
millisecond bounds (inclusive) and returns Sample objects in any order.

    InMemorySampleSource    - readings pushed by the host
    CsvSampleSource         - readings.csv export (displayTime, value)
    DexcomApiSampleSource   - Dexcom v3 API (/users/self/egvs)
    DexcomShareSampleSource - Dexcom Share via pydexcom (last 24 hours)
"""
import logging
import os
import threading
from datetime import datetime, timedelta, timezone
from typing import Iterable, List, Optional
from zoneinfo import ZoneInfo

import pandas as pd
import requests
from dotenv import load_dotenv
from pydexcom import Dexcom

from glucose_forecast.prediction_data import Sample

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'America/New_York'

TOKEN_URL = "https://api.dexcom.com/v2/oauth2/token"
API_BASE = "https://api.dexcom.com/v3"

SHARE_MINUTES = 1440
SHARE_MAX_COUNT = 288


def to_epoch_ms(ts) -> int:
    return int(ts.timestamp() * 1000)


def parse_timestamps(values, tz: str = DEFAULT_TIMEZONE) -> List[int]:
    """Parse timestamps to epoch ms; naive values are taken as local time in `tz`."""
    local = ZoneInfo(tz)
    parsed = pd.to_datetime(pd.Series(values), format='mixed', utc=False)
    result = []
    for ts in parsed:
        if ts.tzinfo is None:
            ts = ts.replace(tzinfo=local)
        result.append(to_epoch_ms(ts))
    return result


class SampleSource:

    def get_samples_in_range(self, min_time: int, max_time: int) -> List[Sample]:
        raise NotImplementedError

    def latest(self, now: Optional[int] = None, lookback_ms: int = 24 * 3600 * 1000) -> Optional[Sample]:
        """Most recent sample at or before `now` (default: the current time)."""
        if now is None:
            now = to_epoch_ms(datetime.now(timezone.utc))
        samples = self.get_samples_in_range(now - lookback_ms, now)
        if not samples:
            return None
        return max(samples, key=lambda s: s.timestamp)


class InMemorySampleSource(SampleSource):

    def __init__(self, samples: Iterable[Sample] = ()):
        self._samples = list(samples)
        self._lock = threading.Lock()

    def add(self, sample: Sample) -> None:
        with self._lock:
            self._samples.append(sample)

    def extend(self, samples: Iterable[Sample]) -> None:
        with self._lock:
            self._samples.extend(samples)

    def __len__(self):
        with self._lock:
            return len(self._samples)

    def newest(self) -> Optional[Sample]:
        with self._lock:
            return max(self._samples, key=lambda s: s.timestamp, default=None)

    def get_samples_in_range(self, min_time: int, max_time: int) -> List[Sample]:
        with self._lock:
            return [s for s in self._samples if min_time <= s.timestamp <= max_time]


class CsvSampleSource(InMemorySampleSource):
    """Readings from a CSV export with `displayTime` and `value` columns."""

    def __init__(self, path: str, tz: str = DEFAULT_TIMEZONE,
                 time_column: str = 'displayTime', value_column: str = 'value'):
        df = pd.read_csv(path)
        missing = {time_column, value_column} - set(df.columns)
        if missing:
            raise ValueError(f"{path}: missing columns {sorted(missing)}")

        df = df.dropna(subset=[time_column, value_column])
        df = df[pd.to_numeric(df[value_column], errors='coerce') > 0]
        timestamps = parse_timestamps(df[time_column], tz)
        values = pd.to_numeric(df[value_column]).astype(float).tolist()
        super().__init__(Sample(timestamp=ts, value=v) for ts, v in zip(timestamps, values))

        if len(self):
            logger.info("Loaded %d glucose readings from %s", len(self), os.path.basename(path))
        else:
            logger.warning("No glucose readings in %s", path)


class DexcomApiSampleSource(SampleSource):
    """
    Estimated glucose values from the Dexcom v3 API.

    Requires an access token; with a refresh token and client credentials an
    expired token (HTTP 401) is refreshed once and the request retried.
    """

    def __init__(self, access_token: str, refresh_token: Optional[str] = None,
                 client_id: Optional[str] = None, client_secret: Optional[str] = None,
                 session=None, chunk_days: int = 30, timeout: float = 30.0):
        self.access_token = access_token
        self.refresh_token = refresh_token
        self.client_id = client_id
        self.client_secret = client_secret
        self.session = session or requests.Session()
        self.chunk_days = chunk_days
        self.timeout = timeout

    @classmethod
    def from_env(cls, dotenv_path=None) -> 'DexcomApiSampleSource':
        load_dotenv(dotenv_path)
        access_token = os.getenv("DEXCOM_ACCESS_TOKEN")
        if not access_token:
            raise ValueError("Missing DEXCOM_ACCESS_TOKEN")
        return cls(
            access_token=access_token,
            refresh_token=os.getenv("DEXCOM_REFRESH_TOKEN"),
            client_id=os.getenv("DEXCOM_CLIENT_ID"),
            client_secret=os.getenv("DEXCOM_CLIENT_SECRET"),
        )

    def refresh_access_token(self) -> None:
        """Refresh the access token using the refresh token."""
        if not (self.refresh_token and self.client_id and self.client_secret):
            raise ValueError("Cannot refresh Dexcom token: missing refresh token or client credentials")
        data = {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": self.refresh_token,
            "grant_type": "refresh_token",
        }
        response = self.session.post(TOKEN_URL, data=data, timeout=self.timeout)
        response.raise_for_status()
        tokens = response.json()
        self.access_token = tokens["access_token"]
        self.refresh_token = tokens.get("refresh_token", self.refresh_token)
        logger.info("Refreshed Dexcom access token")

    def _get(self, url: str, params: dict):
        headers = {"Authorization": f"Bearer {self.access_token}"}
        response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        if response.status_code == 401 and self.refresh_token:
            logger.info("Access token rejected, refreshing")
            self.refresh_access_token()
            headers = {"Authorization": f"Bearer {self.access_token}"}
            response = self.session.get(url, headers=headers, params=params, timeout=self.timeout)
        response.raise_for_status()
        return response.json()

    def fetch_egv_records(self, start_date: datetime, end_date: datetime) -> List[dict]:
        """Fetch estimated glucose values (EGV) for the given date range in chunks."""
        all_records = []
        current_start = start_date
        while current_start < end_date:
            current_end = min(current_start + timedelta(days=self.chunk_days), end_date)
            params = {
                "startDate": current_start.strftime("%Y-%m-%dT%H:%M:%S"),
                "endDate": current_end.strftime("%Y-%m-%dT%H:%M:%S"),
            }
            data = self._get(f"{API_BASE}/users/self/egvs", params)
            records = data.get("records", [])
            logger.debug("Got %d readings for %s to %s", len(records), params["startDate"],
                         params["endDate"])
            all_records.extend(records)
            current_start = current_end
        return all_records

    def get_samples_in_range(self, min_time: int, max_time: int) -> List[Sample]:
        start = datetime.fromtimestamp(min_time / 1000, tz=timezone.utc)
        # endDate is exclusive in the API
        end = datetime.fromtimestamp(max_time / 1000, tz=timezone.utc) + timedelta(seconds=1)
        samples = []
        for record in self.fetch_egv_records(start, end):
            value = record.get("value")
            system_time = record.get("systemTime")
            if value is None or system_time is None:
                continue
            # systemTime is UTC
            ts = pd.Timestamp(system_time)
            ts = ts.tz_localize('UTC') if ts.tzinfo is None else ts.tz_convert('UTC')
            timestamp = to_epoch_ms(ts)
            if min_time <= timestamp <= max_time:
                samples.append(Sample(timestamp=timestamp, value=float(value)))
        return samples


class DexcomShareSampleSource(SampleSource):
    """Readings from Dexcom Share; the service only serves the last 24 hours."""

    def __init__(self, username: Optional[str] = None, password: Optional[str] = None,
                 region: str = "us", client=None):
        if client is None:
            if not username or not password:
                raise ValueError("Missing Dexcom Share credentials")
            client = Dexcom(username=username, password=password, region=region)
        self.client = client

    @classmethod
    def from_env(cls, dotenv_path=None) -> 'DexcomShareSampleSource':
        load_dotenv(dotenv_path)
        return cls(
            username=os.getenv("DEXCOM_USERNAME"),
            password=os.getenv("DEXCOM_PASSWORD"),
            region=os.getenv("DEXCOM_REGION", "us"),
        )

    def get_samples_in_range(self, min_time: int, max_time: int) -> List[Sample]:
        readings = self.client.get_glucose_readings(minutes=SHARE_MINUTES, max_count=SHARE_MAX_COUNT)
        samples = []
        for reading in readings or []:
            timestamp = to_epoch_ms(reading.datetime)
            if min_time <= timestamp <= max_time:
                samples.append(Sample(timestamp=timestamp, value=float(reading.value)))
        logger.debug("Dexcom Share: %d of %d readings in range", len(samples), len(readings or []))
        return samples
