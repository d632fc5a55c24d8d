from datetime import date, timedelta

import pandas as pd

from rfid_tracker.constants import STATUS_REGISTERED, STATUS_NOT_REGISTERED


def attendance_frame(records):
    rows = [
        {
            "uid": r.uid,
            "student_id": r.student_id,
            "full_name": r.full_name,
            "status": r.status,
            "scanned_at": r.scanned_at,
        }
        for r in records
    ]
    df = pd.DataFrame(
        rows,
        columns=["uid", "student_id", "full_name", "status", "scanned_at"],
    )
    df["scanned_at"] = pd.to_datetime(df["scanned_at"])
    return df


def summarize_attendance(records, registered_students, today=None):
    """Dashboard counters over attendance rows.

    Week means the seven days ending ``today``.
    """
    today = today or date.today()
    df = attendance_frame(records)

    if df.empty:
        return {
            "total_scans": 0,
            "today_scans": 0,
            "week_scans": 0,
            "students_present_today": 0,
            "unregistered_scans_today": 0,
            "registered_students": registered_students,
            "last_scan": None,
        }

    days = df["scanned_at"].dt.date
    today_df = df[days == today]
    week_start = today - timedelta(days=6)
    week_df = df[(days >= week_start) & (days <= today)]

    present = today_df.loc[today_df["status"] == STATUS_REGISTERED, "uid"].nunique()
    unregistered = (today_df["status"] == STATUS_NOT_REGISTERED).sum()

    last = df.sort_values("scanned_at").iloc[-1]

    return {
        "total_scans": int(len(df)),
        "today_scans": int(len(today_df)),
        "week_scans": int(len(week_df)),
        "students_present_today": int(present),
        "unregistered_scans_today": int(unregistered),
        "registered_students": registered_students,
        "last_scan": {
            "uid": last["uid"],
            "fullName": last["full_name"],
            "status": last["status"],
            "scannedAt": last["scanned_at"].strftime("%Y-%m-%d %H:%M:%S"),
        },
    }
