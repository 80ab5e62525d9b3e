import os
import sys
from dotenv import load_dotenv

# Ensure project root is in path
PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), '..'))
sys.path.insert(0, PROJECT_ROOT)

# Load environment variables
load_dotenv()

from app.config import LOCAL_MODELS
from app.errors import ModelUpdateError
from app.services.local_classifier_service import local_classifier_service


def check_and_download(classifier_ids):
    if not os.environ.get("HF_TOKEN"):
        print("Warning: HF_TOKEN not found in environment. Gated models may fail to download.")

    success = True
    for classifier_id in classifier_ids:
        print(f"\n--- Checking {classifier_id} ({LOCAL_MODELS.get(classifier_id, 'unknown')}) ---")
        try:
            # snapshot_download checks if files are already present and only downloads missing pieces
            path = local_classifier_service.update_model(classifier_id)
            print(f"Classifier {classifier_id} is ready at: {path}")
        except ModelUpdateError as e:
            print(f"Unable to download model {classifier_id}: {e}")
            success = False

    if success:
        print("\nAll models are downloaded and verified.")
    else:
        print("\nSome models failed to download. Please check your HF_TOKEN and internet connection.")
        sys.exit(1)


if __name__ == "__main__":
    check_and_download(sys.argv[1:] or list(LOCAL_MODELS))
