from gcp_pubsub_adapter.main import main

if __name__ == "__main__":
    main()
