import boto3
import getpass

secrets = [
    ("rentmatch/FLASK_SECRET_KEY", "Flask secret key"),
    ("rentmatch/MYSQL_USER", "MySQL user"),
    ("rentmatch/MYSQL_PASSWORD", "MySQL password"),
    ("rentmatch/GOOGLE_OAUTH_CLIENT_ID", "Google OAuth client ID"),
    ("rentmatch/GOOGLE_OAUTH_CLIENT_SECRET", "Google OAuth client secret"),
    ("rentmatch/OPENAI_API_KEY", "OpenAI API key"),
    ("rentmatch/PAYMENT_WEBHOOK_SECRET", "Payment provider callback signing secret"),
    ("rentmatch/ASSETS_BUCKET", "S3 bucket for agent media"),
]

client = boto3.client('secretsmanager')

for name, desc in secrets:
    value = getpass.getpass(f"Enter value for {desc} ({name}): ")
    if not value:
        print(f"Skipped {name}")
        continue
    try:
        client.put_secret_value(SecretId=name, SecretString=value)
        print(f"Updated {name}")
    except client.exceptions.ResourceNotFoundException:
        client.create_secret(Name=name, SecretString=value)
        print(f"Created {name}")
