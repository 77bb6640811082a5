import argparse
import random
import time

import requests

import db

BASE_URL = "http://127.0.0.1:8000"

COURSE_ID = "onboarding"

# (question, options, index of the correct option)
QUESTIONS = {
    "safety": [
        ("Where is the nearest fire exit listed?", ["Floor plan", "Coffee machine", "Parking lot"], 0),
        ("Who do you report an incident to first?", ["A customer", "Your supervisor", "Nobody"], 1),
        ("What does a yellow floor sign mean?", ["Wet floor", "Closed store", "Sale"], 0),
        ("When must protective gloves be worn?", ["Never", "Only on Fridays", "When handling chemicals"], 2),
        ("How often are fire drills held?", ["Twice a year", "Every decade", "Never"], 0),
    ],
    "tools": [
        ("Which system records sales?", ["POS terminal", "Printer", "Phone"], 0),
        ("Where are price labels printed?", ["Back office", "Checkout", "Warehouse"], 0),
        ("What do you scan to look up stock?", ["Barcode", "Receipt", "Badge"], 0),
        ("Who approves refunds above the limit?", ["Cashier", "Store manager", "Customer"], 1),
    ],
    "emergency-exits": [
        ("Exit doors must be kept...", ["Locked", "Clear", "Decorated"], 1),
        ("Exit signs are lit in...", ["Green", "Purple", "Blue"], 0),
    ],
    "first-aid": [
        ("The first-aid kit is kept...", ["At the front desk", "Off-site", "In a car"], 0),
        ("Before helping an injured person you...", ["Check the scene is safe", "Leave", "Call a friend"], 0),
    ],
}

USERS = ["alice", "peter", "marco"]


def _quiz_payload(key):
    return [
        {"id": f"{key}-{i}", "type": "multiple_choice", "question": q, "options": options, "correctAnswer": correct}
        for i, (q, options, correct) in enumerate(QUESTIONS[key], start=1)
    ]


def seed_demo_content():
    """Write the demo course straight into the local database."""
    db.init()
    db.upsert_course(COURSE_ID, "Store Onboarding")
    db.upsert_training(
        "t-safety", COURSE_ID, "Workplace Safety",
        video_duration=600, minimum_watch_time=300, total_xp=500, position=1,
    )
    db.upsert_training("t-tools", COURSE_ID, "Store Tools", total_xp=300, position=2)
    db.upsert_mini_training("mt-exits", "t-safety", "Emergency Exits", video_duration=120, position=1)
    db.upsert_mini_training("mt-first-aid", "t-safety", "First Aid", video_duration=180, position=2)

    db.upsert_quiz("quiz-safety", db.ACTIVITY_TRAINING, "t-safety", _quiz_payload("safety"), questions_to_show=4)
    db.upsert_quiz("quiz-tools", db.ACTIVITY_TRAINING, "t-tools", _quiz_payload("tools"), max_attempts=3)
    db.upsert_quiz("quiz-exits", db.ACTIVITY_MINI_TRAINING, "mt-exits", _quiz_payload("emergency-exits"))
    db.upsert_quiz("quiz-first-aid", db.ACTIVITY_MINI_TRAINING, "mt-first-aid", _quiz_payload("first-aid"))
    print(f"Seeded course {COURSE_ID} into {db.DB_PATH}")


def test_connection():
    try:
        r = requests.get(BASE_URL, timeout=5)
        print(f"Server status: {r.status_code}")
        return r.status_code == 200
    except requests.RequestException as e:
        print(f"Server connection error: {e}")
        return False


def login(user_id):
    r = requests.post(f"{BASE_URL}/auth/dev-login", json={"user_id": user_id}, timeout=5)
    if not r.ok:
        print(f"Login failed for {user_id}: {r.status_code} (is ALLOW_DEV_LOGIN set?)")
        return None
    return {"Authorization": f"Bearer {r.json()['token']}"}


def build_answers(key, accuracy):
    # option ids do not depend on the shuffle, only on the authored position
    answers = {}
    for i, (_, options, correct) in enumerate(QUESTIONS[key], start=1):
        qid = f"{key}-{i}"
        pick = correct if random.random() < accuracy else (correct + 1) % len(options)
        answers[qid] = f"opt-{qid}-{pick}"
    return answers


def submit(headers, path, key, accuracy):
    started = int(time.time() * 1000) - random.randint(30_000, 240_000)
    r = requests.post(
        f"{BASE_URL}{path}",
        json={"answers": build_answers(key, accuracy), "startedAt": started},
        headers=headers,
        timeout=10,
    )
    if r.ok:
        body = r.json()
        print(f"  {path}: score {body['score']} passed={body['passed']} xp={body['xpEarned']}")
    else:
        print(f"  {path}: error {r.status_code} {r.text}")
    return r


def simulate_learner(user_id, accuracy):
    headers = login(user_id)
    if headers is None:
        return
    print(f"\n[{user_id}] accuracy {accuracy:.0%}")
    requests.post(f"{BASE_URL}/trainings/t-safety/watch-progress", json={"watchedSeconds": 540}, headers=headers, timeout=5)
    for mini_id, key in (("mt-exits", "emergency-exits"), ("mt-first-aid", "first-aid")):
        requests.post(f"{BASE_URL}/mini-trainings/{mini_id}/watch-progress", json={"watchedSeconds": 120}, headers=headers, timeout=5)
        submit(headers, f"/mini-trainings/{mini_id}/quiz/submit", key, accuracy)
    submit(headers, "/trainings/t-safety/quiz/submit", "safety", accuracy)
    submit(headers, "/trainings/t-tools/quiz/submit", "tools", accuracy)

    r = requests.get(f"{BASE_URL}/courses/{COURSE_ID}/progress", headers=headers, timeout=5)
    if r.ok:
        print(f"  course progress: {r.json()['progress']}%")


def run_tests():
    if not test_connection():
        return
    for user in USERS:
        simulate_learner(user, accuracy=random.uniform(0.5, 1.0))


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Seed demo content and drive a running server.")
    parser.add_argument("--seed", action="store_true", help="write the demo course into DB_PATH")
    parser.add_argument("--simulate", action="store_true", help="submit quizzes against BASE_URL")
    args = parser.parse_args()
    if args.seed or not args.simulate:
        seed_demo_content()
    if args.simulate:
        run_tests()
