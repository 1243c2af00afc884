"""
This is the Secret Santa site for the community, it is designed with the
following criteria in mind
1. Participants sign up with their expertise level
2. An admin runs the matching once (seniors gift to juniors first)
3. Assignments stay hidden until the reveal date
"""

import json
import logging
import os
import smtplib
import ssl
import tempfile
import time
from datetime import datetime, timezone
from email.message import EmailMessage
from flask import Flask, request, session, redirect, render_template_string, jsonify
from werkzeug.security import generate_password_hash, check_password_hash

from matching import normalize_tier, run_match, is_complete_match

logger = logging.getLogger(__name__)

# =====================
# CONFIG
# =====================

DATA_FILE = os.environ.get("SANTA_DATA_FILE", "data.json")

# CHANGE THIS
SECRET_KEY = os.environ.get("SANTA_SECRET_KEY", "CHANGE_ME_TO_RANDOM_STRING")

ADMIN_EMAILS = {
    e.strip().lower()
    for e in os.environ.get("SANTA_ADMIN_EMAILS", "").split(",")
    if e.strip()
}

REVEAL_DATE = datetime.fromisoformat(
    os.environ.get("SANTA_REVEAL_DATE", "2025-12-29T00:00:00+00:00")
)
if REVEAL_DATE.tzinfo is None:
    REVEAL_DATE = REVEAL_DATE.replace(tzinfo=timezone.utc)

def check_batch_size(size):
    size = int(size)
    if size < 1:
        raise ValueError(f"Email batch size must be at least 1, got {size}")
    return size

# notifications go out in small batches to avoid rate limits
EMAIL_BATCH_SIZE = check_batch_size(os.environ.get("SANTA_EMAIL_BATCH_SIZE", "5"))
EMAIL_BATCH_DELAY = float(os.environ.get("SANTA_EMAIL_BATCH_DELAY", "60"))

# no SMTP_HOST means no emails can be sent
SMTP_HOST = os.environ.get("SANTA_SMTP_HOST", "")
SMTP_PORT = int(os.environ.get("SANTA_SMTP_PORT", "587"))
SMTP_USER = os.environ.get("SANTA_SMTP_USER", "")
SMTP_PASSWORD = os.environ.get("SANTA_SMTP_PASSWORD", "")
SMTP_USE_SSL = os.environ.get("SANTA_SMTP_USE_SSL", "").lower() in ("1", "true", "yes")
SMTP_FROM = os.environ.get("SANTA_SMTP_FROM", SMTP_USER)

APP_NAME = "Community Secret Santa"
APP_URL = os.environ.get("SANTA_APP_URL", "http://localhost:5000")

PENDING = "pending"
SENT = "sent"

# =====================
# FILE I/O
# =====================

def load_data():
    if not os.path.exists(DATA_FILE):
        return {"participants": {}, "assignments": []}
    with open(DATA_FILE, "r") as f:
        return json.load(f)

def save_data(data):
    directory = os.path.dirname(os.path.abspath(DATA_FILE))
    fd, temp = tempfile.mkstemp(dir=directory)
    with os.fdopen(fd, "w") as f:
        json.dump(data, f, indent=2)
    os.replace(temp, DATA_FILE)

# =====================
# PARTICIPANTS
# =====================

def add_participant(data, email, name, password, expertise_level=None):
    email = (email or "").strip().lower()
    name = (name or "").strip()

    if not email or "@" not in email:
        raise ValueError("A valid email is required")
    if not name:
        raise ValueError("Name is required")
    if not password:
        raise ValueError("Password is required")
    if email in data["participants"]:
        raise ValueError(f"{email} is already signed up")

    data["participants"][email] = {
        "name": name,
        "expertise_level": normalize_tier(expertise_level).capitalize(),
        "password_hash": generate_password_hash(password),
    }
    return email

def parse_wishlist(text):
    # one item per line, "name | url" or just "name"
    items = []
    for line in (text or "").splitlines():
        name, _, url = line.partition("|")
        if name.strip():
            items.append({"name": name.strip(), "url": url.strip()})
    return items

def update_profile(data, email, name=None, expertise_level=None, wishlist=None,
                   linkedin_url=None, website_url=None):
    entry = data["participants"].get(email)
    if entry is None:
        raise ValueError(f"{email} is not signed up")

    if name is not None:
        name = name.strip()
        if not name:
            raise ValueError("Name is required")
        entry["name"] = name
    if expertise_level is not None:
        entry["expertise_level"] = normalize_tier(expertise_level).capitalize()
    if wishlist is not None:
        entry["wishlist"] = wishlist
    if linkedin_url is not None:
        entry["linkedin_url"] = linkedin_url.strip()
    if website_url is not None:
        entry["website_url"] = website_url.strip()

    logger.info("Updated profile for %s", email)
    return entry

def list_participants(data):
    directory = [
        {
            "email": email,
            "name": p["name"],
            "expertise_level": p.get("expertise_level", "Mid"),
            "wishlist": p.get("wishlist", []),
            "linkedin_url": p.get("linkedin_url", ""),
            "website_url": p.get("website_url", ""),
        }
        for email, p in data["participants"].items()
    ]
    return sorted(directory, key=lambda p: p["name"].lower())

def build_roster(data):
    return [
        {"email": email, "expertise_level": p.get("expertise_level")}
        for email, p in data["participants"].items()
    ]

# =====================
# ASSIGNMENT LOGIC
# =====================

def run_matching(data, rng=None):
    roster = build_roster(data)

    if len(roster) < 2:
        raise RuntimeError("Need at least 2 participants to generate assignments")
    if data["assignments"]:
        raise RuntimeError("Assignments already exist, clear them first")

    result = run_match(roster, rng=rng)
    if result is None or not is_complete_match(data["participants"], result):
        raise RuntimeError("Algorithm failed to find a valid matching - try again")

    created_at = datetime.now(timezone.utc).isoformat()
    records = [
        {
            "giver_email": giver,
            "receiver_email": receiver,
            "status": PENDING,
            "created_at": created_at,
        }
        for giver, receiver in result.items()
    ]
    data["assignments"].extend(records)

    logger.info("Created %d assignments", len(records))
    return records

def clear_assignments(data):
    removed = len(data["assignments"])
    data["assignments"] = []
    logger.info("Cleared %d assignments", removed)
    return removed

def find_assignment(data, email):
    for a in data["assignments"]:
        if a["giver_email"] == email:
            return a
    return None

def is_after_reveal(now=None):
    if now is None:
        now = datetime.now(timezone.utc)
    return now >= REVEAL_DATE

# =====================
# NOTIFICATIONS
# =====================

def build_message(data, giver, receiver):
    receiver_name = data["participants"][receiver]["name"]
    giver_name = data["participants"][giver]["name"]

    msg = EmailMessage()
    msg["Subject"] = f"{APP_NAME}: your match is ready"
    msg["From"] = SMTP_FROM
    msg["To"] = giver
    msg.set_content(
        f"Hi {giver_name},\n\n"
        f"You are buying a gift for {receiver_name}.\n"
        f"See their profile and wishlist at {APP_URL}/assignment\n"
    )
    return msg

def smtp_connect():
    context = ssl.create_default_context()
    if SMTP_USE_SSL:
        server = smtplib.SMTP_SSL(SMTP_HOST, SMTP_PORT, context=context)
    else:
        server = smtplib.SMTP(SMTP_HOST, SMTP_PORT)
        server.ehlo()
        server.starttls(context=context)
    if SMTP_USER:
        server.login(SMTP_USER, SMTP_PASSWORD)
    return server

def build_notifier(data):
    """
    Returns notify(giver, receiver) sending the giver an email over SMTP,
    or None when no SMTP server is configured.
    """
    if not SMTP_HOST:
        return None

    def notify(giver, receiver):
        server = smtp_connect()
        try:
            server.send_message(build_message(data, giver, receiver))
        finally:
            server.quit()

    return notify

def send_notifications(data, notify, batch_size=None, batch_delay=None, on_batch=None):
    """
    Calls notify(giver, receiver) for every pending assignment, batch by batch.

    Delivered records become "sent", failed ones stay "pending". on_batch()
    is called after each batch so progress can be saved as it goes.
    """
    batch_size = check_batch_size(EMAIL_BATCH_SIZE if batch_size is None else batch_size)
    batch_delay = EMAIL_BATCH_DELAY if batch_delay is None else batch_delay

    pending = [a for a in data["assignments"] if a["status"] == PENDING]
    if not pending:
        raise RuntimeError("No pending assignments to send emails for")

    sent = failed = 0
    for start in range(0, len(pending), batch_size):
        if start:
            time.sleep(batch_delay)

        for a in pending[start:start + batch_size]:
            try:
                notify(a["giver_email"], a["receiver_email"])
            except Exception as e:
                logger.warning("Notification failed for %s: %s", a["giver_email"], e)
                failed += 1
                continue
            a["status"] = SENT
            sent += 1

        if on_batch is not None:
            on_batch()

    logger.info("Notifications sent: %d, failed: %d", sent, failed)
    return sent, failed

# =====================
# FLASK APP
# =====================

app = Flask(__name__)
app.secret_key = SECRET_KEY

LOGIN_TEMPLATE = """
<h2>Secret Santa Login</h2>
<form method="post">
  <input name="email" placeholder="Email" required>
  <input name="password" type="password" placeholder="Password" required>
  <button type="submit">Login</button>
  {% if error %}<p style="color:red">{{ error }}</p>{% endif %}
</form>
<a href="/signup">Sign up</a>
"""

SIGNUP_TEMPLATE = """
<h2>Join the Secret Santa</h2>
<form method="post">
  <input name="email" placeholder="Email" required>
  <input name="name" placeholder="Name" required>
  <input name="password" type="password" placeholder="Password" required>
  <select name="expertise_level">
    <option>Junior</option>
    <option selected>Mid</option>
    <option>Senior</option>
  </select>
  <button type="submit">Sign up</button>
  {% if error %}<p style="color:red">{{ error }}</p>{% endif %}
</form>
"""

ASSIGNMENT_TEMPLATE = """
<h1>🎅 Secret Santa</h1>
{% if recipient %}
<p>You are buying a gift for:</p>
<h2>{{ recipient }}</h2>
{% else %}
<p>{{ message }}</p>
{% endif %}
<a href="/logout">Logout</a>
"""

TIERS = ("Junior", "Mid", "Senior")

PROFILE_TEMPLATE = """
<h2>Your Profile</h2>
<form method="post">
  <input name="name" value="{{ p.name }}" required>
  <select name="expertise_level">
    {% for t in tiers %}
    <option {% if t == p.expertise_level %}selected{% endif %}>{{ t }}</option>
    {% endfor %}
  </select>
  <input name="linkedin_url" value="{{ p.linkedin_url or '' }}" placeholder="LinkedIn URL">
  <input name="website_url" value="{{ p.website_url or '' }}" placeholder="Website URL">
  <textarea name="wishlist" placeholder="One per line: item | link">
{%- for item in p.wishlist or [] %}{{ item.name }}{% if item.url %} | {{ item.url }}{% endif %}
{% endfor -%}
  </textarea>
  <button type="submit">Save</button>
  {% if saved %}<p>Profile saved</p>{% endif %}
  {% if error %}<p style="color:red">{{ error }}</p>{% endif %}
</form>
<a href="/assignment">My assignment</a> | <a href="/logout">Logout</a>
"""

ADMIN_TEMPLATE = """
<h1>Secret Santa Admin</h1>
<p>Participants: {{ participants }}</p>
<p>Assignments: {{ assignments }} ({{ pending }} pending)</p>
<form method="post" action="/admin/match"><button>Generate assignments</button></form>
<form method="post" action="/admin/notify"><button>Send assignment emails</button></form>
<form method="post" action="/admin/clear"><button>Clear assignments</button></form>
"""

def is_admin():
    return session.get("user") in ADMIN_EMAILS

@app.route("/", methods=["GET", "POST"])
def login():
    data = load_data()

    if request.method == "POST":
        user = request.form["email"].strip().lower()
        pw = request.form["password"]

        entry = data["participants"].get(user)
        if entry and check_password_hash(entry["password_hash"], pw):
            session["user"] = user
            return redirect("/admin" if user in ADMIN_EMAILS else "/assignment")

        return render_template_string(LOGIN_TEMPLATE, error="Invalid login")

    return render_template_string(LOGIN_TEMPLATE)

@app.route("/signup", methods=["GET", "POST"])
def signup():
    if request.method == "POST":
        data = load_data()
        try:
            email = add_participant(
                data,
                request.form.get("email"),
                request.form.get("name"),
                request.form.get("password"),
                request.form.get("expertise_level"),
            )
        except ValueError as e:
            return render_template_string(SIGNUP_TEMPLATE, error=str(e)), 400

        save_data(data)
        session["user"] = email
        return redirect("/assignment")

    return render_template_string(SIGNUP_TEMPLATE)

@app.route("/assignment")
def assignment_view():
    if "user" not in session:
        return redirect("/")

    if not is_after_reveal():
        message = "Assignments will be revealed on " + REVEAL_DATE.strftime("%B %d, %Y")
        return render_template_string(ASSIGNMENT_TEMPLATE, message=message), 403

    data = load_data()
    a = find_assignment(data, session["user"])
    if a is None:
        message = "You have not been assigned a match yet. Contact the admin if this is unexpected."
        return render_template_string(ASSIGNMENT_TEMPLATE, message=message), 404

    receiver = data["participants"][a["receiver_email"]]["name"]
    return render_template_string(ASSIGNMENT_TEMPLATE, recipient=receiver)

@app.route("/profile", methods=["GET", "POST"])
def profile():
    if "user" not in session:
        return redirect("/")

    data = load_data()
    email = session["user"]
    entry = data["participants"].get(email)
    if entry is None:
        session.clear()
        return redirect("/")

    if request.method == "POST":
        try:
            entry = update_profile(
                data,
                email,
                name=request.form.get("name"),
                expertise_level=request.form.get("expertise_level"),
                wishlist=parse_wishlist(request.form.get("wishlist")),
                linkedin_url=request.form.get("linkedin_url"),
                website_url=request.form.get("website_url"),
            )
        except ValueError as e:
            return render_template_string(PROFILE_TEMPLATE, p=entry, tiers=TIERS, error=str(e)), 400

        save_data(data)
        return render_template_string(PROFILE_TEMPLATE, p=entry, tiers=TIERS, saved=True)

    return render_template_string(PROFILE_TEMPLATE, p=entry, tiers=TIERS)

@app.route("/participants")
def participants_view():
    if "user" not in session:
        return jsonify(error="Authentication required"), 401

    return jsonify(participants=list_participants(load_data()))

@app.route("/logout")
def logout():
    session.clear()
    return redirect("/")

@app.route("/admin")
def admin_view():
    if not is_admin():
        return "Forbidden", 403

    data = load_data()
    return render_template_string(
        ADMIN_TEMPLATE,
        participants=len(data["participants"]),
        assignments=len(data["assignments"]),
        pending=sum(1 for a in data["assignments"] if a["status"] == PENDING),
    )

@app.route("/admin/match", methods=["POST"])
def admin_match():
    if not is_admin():
        return jsonify(error="Forbidden"), 403

    data = load_data()
    try:
        records = run_matching(data)
    except RuntimeError as e:
        return jsonify(error=str(e)), 400

    save_data(data)
    return jsonify(created=len(records))

@app.route("/admin/clear", methods=["POST"])
def admin_clear():
    if not is_admin():
        return jsonify(error="Forbidden"), 403

    data = load_data()
    removed = clear_assignments(data)
    save_data(data)
    return jsonify(removed=removed)

@app.route("/admin/notify", methods=["POST"])
def admin_notify():
    if not is_admin():
        return jsonify(error="Forbidden"), 403

    data = load_data()
    notify = build_notifier(data)
    if notify is None:
        return jsonify(error="No SMTP server configured, set SANTA_SMTP_HOST"), 400

    try:
        sent, failed = send_notifications(data, notify, on_batch=lambda: save_data(data))
    except RuntimeError as e:
        return jsonify(error=str(e)), 400

    return jsonify(sent=sent, failed=failed)

if __name__ == "__main__":
    logging.basicConfig(
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        level=logging.INFO,
    )
    app.run()
