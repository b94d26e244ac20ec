from mangum import Mangum

from api.app import create_app

app = create_app(root_path="/api")

# Serverless invocations are short-lived, so the background workers stay off;
# settlement then happens through status checks and gateway callbacks.
handler = Mangum(app, lifespan="off")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
