import urllib.parse
from typing import Any, Dict, Tuple

import requests

API = "https://api.fitbit.com"

# -------------------------------------------------------------------
# Auth header
# -------------------------------------------------------------------

def _auth(access_token: str) -> Dict[str, str]:
    """Build the Authorization header for Fitbit API calls."""
    return {"Authorization": f"Bearer {access_token}", "Accept": "application/json"}


# -------------------------------------------------------------------
# STEPS (daily totals, one range request instead of per-day polling)
# -------------------------------------------------------------------

def get_steps_range(access_token: str, start_ymd: str, end_ymd: str) -> Tuple[int, Any]:
    """
    Daily step totals between start_ymd and end_ymd (inclusive).

    Does not raise on HTTP errors: the caller classifies the status and body.
    A body that is not JSON comes back as {}.

    Returns:
        (200, {"activities-steps": [{"dateTime": "2024-03-09", "value": "8000"}, ...]})
    """
    start = urllib.parse.quote(start_ymd, safe="")
    end = urllib.parse.quote(end_ymd, safe="")
    url = f"{API}/1/user/-/activities/steps/date/{start}/{end}.json"
    r = requests.get(url, headers=_auth(access_token), timeout=30)
    try:
        body = r.json()
    except ValueError:
        body = {}
    return r.status_code, body


# -------------------------------------------------------------------
# DAILY ACTIVITY SUMMARY (one day, for activityCalories)
# -------------------------------------------------------------------

def get_daily_activity(access_token: str, date_ymd: str) -> Tuple[int, Any]:
    """
    Activity summary for one day. Same (status, body) contract as get_steps_range.

    Returns:
        (200, {"summary": {"activityCalories": 812, "caloriesOut": 2390, ...}, ...})
    """
    day = urllib.parse.quote(date_ymd, safe="")
    url = f"{API}/1/user/-/activities/date/{day}.json"
    r = requests.get(url, headers=_auth(access_token), timeout=30)
    try:
        body = r.json()
    except ValueError:
        body = {}
    return r.status_code, body


# -------------------------------------------------------------------
# WEIGHT LOGS (at most 31 days per request)
# -------------------------------------------------------------------

def get_weight_logs(access_token: str, start_ymd: str, end_ymd: str) -> Tuple[int, Any]:
    """
    Body weight logs between start_ymd and end_ymd (inclusive).

    No Accept-Language header is sent, so weights come back in kilograms.

    Returns:
        (200, {"weight": [{"logId": 1330991999000, "date": "2024-03-08",
                           "time": "07:12:40", "weight": 81.2, "fat": 21.4}, ...]})
    """
    start = urllib.parse.quote(start_ymd, safe="")
    end = urllib.parse.quote(end_ymd, safe="")
    url = f"{API}/1/user/-/body/log/weight/date/{start}/{end}.json"
    r = requests.get(url, headers=_auth(access_token), timeout=30)
    try:
        body = r.json()
    except ValueError:
        body = {}
    return r.status_code, body
